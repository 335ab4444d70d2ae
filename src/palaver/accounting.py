"""Token usage values and the session-wide accounting sink."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class Usage:
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    @classmethod
    def of(cls, prompt_tokens: int | None, completion_tokens: int | None,
           total_tokens: int | None = None) -> Usage:
        """Build from possibly-missing provider counters."""
        prompt = prompt_tokens or 0
        completion = completion_tokens or 0
        return cls(prompt, completion, total_tokens or prompt + completion)


@runtime_checkable
class UsageSink(Protocol):
    def record(self, usage: Usage) -> None:
        ...


class SessionUsage:
    """Accumulates usage across turns.

    Turns may finish on different tasks or threads; each completed turn
    is folded in with a single locked update.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total = Usage()
        self._turns = 0

    def record(self, usage: Usage) -> None:
        with self._lock:
            self._total = self._total + usage
            self._turns += 1

    @property
    def total(self) -> Usage:
        return self._total

    @property
    def turns(self) -> int:
        return self._turns
