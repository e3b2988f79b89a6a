"""
Attribution of proxied calls to users, projects and models, and recording
of their usage.

The repository is blocking; every storage round trip runs in a worker
thread so concurrent calls are never serialized behind one another.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from ..storage.models import User
from ..storage.repository import UsageRepository
from .errors import InternalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class CallContext:
    """Identity resolved so far for one call, used in every log line."""
    remote: str = "-"
    user_id: Optional[int] = None
    user_name: Optional[str] = None
    project_id: Optional[int] = None
    project_name: Optional[str] = None
    model_id: Optional[int] = None
    model_name: Optional[str] = None

    def __str__(self) -> str:
        parts = [self.remote]
        if self.user_name is not None:
            parts.append(f"user {self.user_name!r} (ID={self.user_id})")
        if self.project_name is not None:
            parts.append(f"project {self.project_name!r} (ID={self.project_id})")
        if self.model_name is not None:
            model_id = "?" if self.model_id is None else self.model_id
            parts.append(f"model {self.model_name!r} (ID={model_id})")
        return ", ".join(parts)


class AttributionResolver:
    """Maps credentials to users and labels to project and model rows."""

    def __init__(self, repository: UsageRepository):
        self.repository = repository

    async def _run(self, what: str, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as e:
            raise InternalError(f"failed to {what}") from e

    async def resolve_user(self, key: str) -> Optional[User]:
        """Find the user owning ``key``. Never creates users."""
        return await self._run("find user", self.repository.find_user_by_key, key)

    async def resolve_project(self, user_id: int, name: str) -> int:
        return await self._run(
            "find project", self.repository.get_or_create_project, user_id, name
        )

    async def resolve_model(self, name: str) -> int:
        return await self._run("get model " + name, self.repository.get_or_create_model, name)


class UsageRecorder:
    """Appends usage facts for completed calls.

    Accounting is best-effort once the response has been delivered: a failed
    write is logged and reported through the return value only.
    """

    def __init__(self, repository: UsageRepository):
        self.repository = repository

    async def record(self, context: CallContext, tokens: int) -> bool:
        try:
            await asyncio.to_thread(
                self.repository.record_usage, context.model_id, context.project_id, tokens
            )
        except (sqlite3.Error, OverflowError) as e:
            # OverflowError: the count does not fit an SQLite integer
            logger.error("Failed to save usage for %s, tokens %d: %s", context, tokens, e)
            return False
        logger.info("Usage saved for %s, tokens %d", context, tokens)
        return True
