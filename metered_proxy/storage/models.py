"""
Data models for storage layer.

Defines database entities and data structures.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List


@dataclass(frozen=True)
class User:
    """An API consumer. The key is the only authentication secret."""
    id: int
    name: str
    key: str


@dataclass(frozen=True)
class UsageRecord:
    """Immutable ledger entry for one completed upstream call.

    Append-only facts used for billing and reporting.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    user: str
    project: str
    model: str
    tokens: int


@dataclass(frozen=True)
class ProjectUsage:
    """Tokens consumed by one project of one user within a month."""
    user: str
    project: str
    tokens: int


@dataclass
class MonthlyUsage:
    """Usage totals for a calendar month (``YYYY-MM``)."""
    month: str
    projects: List[ProjectUsage] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return sum(p.tokens for p in self.projects)
