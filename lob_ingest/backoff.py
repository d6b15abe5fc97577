from __future__ import annotations

import random
from typing import Callable


def backoff_delay(
    attempt: int,
    base_s: float,
    cap_s: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """Exponential backoff with jitter in [0.7, 1.3) of the nominal delay."""
    base = max(0.0, float(base_s))
    cap = max(base, float(cap_s))
    if base <= 0.0 or cap <= 0.0:
        return 0.0
    delay = min(cap, base * (2 ** max(0, int(attempt) - 1)))
    return delay * (0.7 + 0.6 * rand())
