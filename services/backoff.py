"""
Retry backoff policy for failed jobs
"""

import random
from typing import Optional


def compute_backoff(attempt: int, base: float, jitter_ceiling: float, cap: float,
                    rng: Optional[random.Random] = None) -> float:
    """
    Exponential backoff with additive jitter: base * 2^attempt + U(0, jitter), capped

    Args:
        attempt: number of executions already finished for the job
        base: base delay in seconds
        jitter_ceiling: upper bound of the random jitter in seconds
        cap: maximum delay in seconds
        rng: random source, injectable for deterministic tests
    """
    rng = rng or random
    exponent = min(max(attempt, 0), 32)
    delay = base * (2 ** exponent)
    if jitter_ceiling > 0:
        delay += rng.uniform(0, jitter_ceiling)
    return min(delay, cap)
