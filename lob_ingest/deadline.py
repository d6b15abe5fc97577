from __future__ import annotations

import time
from typing import Callable

from lob_core.errors import DeadlineExceeded


class RunDeadline:
    """Wall-clock budget for one invocation.

    `stopping()` turns true `grace_s` before the hard deadline so the loop can
    stop taking diffs and flush. Checks are cooperative; nothing here cancels.
    """

    def __init__(
        self,
        budget_s: float,
        grace_s: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._clock = clock
        self.budget_s = max(0.0, float(budget_s))
        self.grace_s = max(0.0, float(grace_s))
        self.started = clock()
        self.expires_at = self.started + self.budget_s

    def elapsed(self) -> float:
        return self._clock() - self.started

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self._clock())

    def available(self) -> float:
        """Time left before shutdown should begin."""
        return max(0.0, self.remaining() - self.grace_s)

    def expired(self) -> bool:
        return self.remaining() <= 0.0

    def stopping(self) -> bool:
        return self.available() <= 0.0

    def check(self) -> None:
        if self.stopping():
            raise DeadlineExceeded(
                f"run budget {self.budget_s:.1f}s used (elapsed={self.elapsed():.1f}s grace={self.grace_s:.1f}s)"
            )
