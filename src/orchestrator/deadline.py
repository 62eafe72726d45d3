"""Caller-supplied time budget for one conversation turn."""

import time
from typing import Callable, Optional


class Deadline:
    """
    A point in time after which blocking work should give up.

    A deadline created without a budget never expires.
    """

    def __init__(
        self,
        seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ) -> None:
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    def remaining(self) -> Optional[float]:
        """Seconds left, clamped at zero; None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def bound(self, timeout: Optional[float]) -> Optional[float]:
        """The smaller of a per-call timeout and the time left."""
        remaining = self.remaining()
        if remaining is None:
            return timeout
        if timeout is None:
            return remaining
        return min(timeout, remaining)


def bound_timeout(timeout: Optional[float], deadline: Optional[Deadline]) -> Optional[float]:
    return deadline.bound(timeout) if deadline is not None else timeout
