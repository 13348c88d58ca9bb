from __future__ import annotations

import random


def compute_backoff(attempt: int, base_delay: float, jitter: float = 0.0) -> float:
    """Compute exponential backoff in milliseconds for the given retry attempt.

    The first retry waits ``base_delay``, every further retry doubles it.
    """
    delay = base_delay * 2 ** max(attempt - 1, 0)
    if jitter:
        delay += random.uniform(0, jitter)
    return delay


def total_attempts(retry_attempts: int) -> int:
    """Initial attempt plus ``retry_attempts`` retries."""
    return 1 + max(retry_attempts, 0)
