"""Wall-clock budget for a single slice invocation."""

from __future__ import annotations

import time
from collections.abc import Callable


class TimeBudget:
    """Tracks elapsed time against a hard limit and a soft limit.

    ``hard`` is the platform ceiling for the invocation; ``soft`` leaves a
    margin for bookkeeping.  *clock* must be monotonic.
    """

    def __init__(
        self,
        hard_limit: float,
        soft_limit: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.hard_limit = hard_limit
        self.soft_limit = soft_limit
        self._clock = clock
        self._started = clock()

    def elapsed(self) -> float:
        return self._clock() - self._started

    def remaining(self) -> float:
        """Seconds left before the soft limit (never negative)."""
        return max(0.0, self.soft_limit - self.elapsed())

    def can_claim(self, allowance: float) -> bool:
        """Whether a new batch may be claimed with *allowance* per item."""
        return self.elapsed() < self.soft_limit - allowance

    def can_start(self, allowance: float) -> bool:
        """Whether an item needing up to *allowance* can still finish in time."""
        return self.elapsed() + allowance <= self.hard_limit
