"""Monotonic lookup deadlines shared by locks, remote calls and the script sandbox."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from .errors import LookupTimeoutError


@dataclass(frozen=True)
class Deadline:
    expires_at: Optional[float]
    clock: Callable[[], float] = field(default=time.monotonic, repr=False, compare=False)

    @classmethod
    def after(cls, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> "Deadline":
        if seconds is None:
            return cls(None, clock)
        return cls(clock() + max(0.0, seconds), clock)

    @classmethod
    def never(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        """Seconds left, ``None`` when unbounded, never negative."""

        if self.expires_at is None:
            return None
        return max(0.0, self.expires_at - self.clock())

    @property
    def expired(self) -> bool:
        return self.expires_at is not None and self.clock() >= self.expires_at

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """Clamp ``timeout`` to the time left before the deadline."""

        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)

    def check(self, operation: str) -> None:
        if self.expired:
            raise LookupTimeoutError(f"Deadline exceeded during {operation}")
