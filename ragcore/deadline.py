"""End-to-end time budget for a single query."""

import time
from typing import Callable, Optional

from ragcore.errors import DeadlineExceeded


class Deadline:
    """
    A monotonic deadline shared by every stage of a query.

    Example:
        deadline = Deadline.after(60)
        deadline.check("retrieval")
        timeout = deadline.clamp(45.0)
    """

    def __init__(self, expires_at: Optional[float], clock: Callable[[], float] = time.monotonic):
        self._expires_at = expires_at
        self._clock = clock

    @classmethod
    def after(cls, seconds: Optional[float], clock: Callable[[], float] = time.monotonic) -> "Deadline":
        if seconds is None:
            return cls(None, clock)
        return cls(clock() + seconds, clock)

    @classmethod
    def none(cls) -> "Deadline":
        return cls(None)

    def remaining(self) -> Optional[float]:
        """Seconds left, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def check(self, stage: str) -> None:
        if self.expired:
            raise DeadlineExceeded(f"Query deadline exceeded before {stage}")

    def clamp(self, timeout: Optional[float]) -> Optional[float]:
        """Shrink a per-call timeout so it never outlives the deadline."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)
