"""Backoff policy for the long-poll retry loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Protocol


class AsyncSleeper(Protocol):
    def __call__(self, seconds: float) -> Awaitable[None]: ...


@dataclass(frozen=True)
class BackoffPolicy:
    base_seconds: float = 3.0
    factor: float = 2.0
    max_seconds: float = 30.0

    def delay_for_attempt(self, attempt: int) -> float:
        delay = self.base_seconds * (self.factor ** max(0, attempt - 1))
        return min(delay, self.max_seconds)
