"""
Token counting and usage tracking.

Binds model names to tiktoken encodings and keeps the running token tally
of a proxied call.
"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Protocol

import tiktoken


class Tokenizer(Protocol):
    """Anything that can split text into a count of tokens."""

    def count(self, text: str) -> int:
        ...


class TiktokenTokenizer:
    """Tokenizer backed by a tiktoken encoding."""

    def __init__(self, encoding: tiktoken.Encoding):
        self.encoding = encoding

    def count(self, text: str) -> int:
        # Special-token markup in user text is counted as plain text
        return len(self.encoding.encode(text, disallowed_special=()))


TokenizerFactory = Callable[[str], Tokenizer]


@lru_cache(maxsize=None)
def tokenizer_for_model(model: str) -> Tokenizer:
    """Return the tokenizer for a model name.

    Raises:
        KeyError: If tiktoken does not know the model
    """
    return TiktokenTokenizer(tiktoken.encoding_for_model(model))


@dataclass
class TokenUsage:
    """Running token tally for one call.

    The prompt part is counted before any completion text arrives.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens
