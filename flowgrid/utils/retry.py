from __future__ import annotations

import asyncio
import random

from ..constants import DEFAULT_RETRY_BASE_DELAY, DEFAULT_RETRY_MAX_DELAY


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_RETRY_BASE_DELAY,
    cap: float = DEFAULT_RETRY_MAX_DELAY,
    jitter: float = 0.0,
) -> float:
    """Compute exponential backoff, doubling per attempt and capped at ``cap``."""
    delay = min(base * 2 ** attempt, cap)
    return delay + random.uniform(0, jitter) if jitter else delay


async def schedule_retry(
    attempt: int,
    base: float = DEFAULT_RETRY_BASE_DELAY,
    cap: float = DEFAULT_RETRY_MAX_DELAY,
) -> float:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base, cap)
    await asyncio.sleep(delay)
    return delay
