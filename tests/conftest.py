"""Shared test fixtures for the metering proxy."""

import os
import tempfile
from typing import List

import pytest

from metered_proxy.storage.repository import UsageRepository


class WordTokenizer:
    """Counts whitespace-separated words; records every call."""

    def __init__(self):
        self.calls: List[str] = []

    def count(self, text: str) -> int:
        self.calls.append(text)
        return len(text.split())


@pytest.fixture
def word_tokenizer():
    return WordTokenizer()


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as temp_dir:
        yield os.path.join(temp_dir, "test.db")


@pytest.fixture
def repository(db_path):
    repo = UsageRepository(db_path)
    repo.initialize_schema()
    yield repo
    repo.close()
