from __future__ import annotations

import asyncio
import random


def compute_backoff(
    attempt: int, base: float = 0.5, cap: float = 8.0, jitter: float = 0.1
) -> float:
    """Compute capped exponential backoff with jitter for retry ``attempt`` (1-based)."""
    delay = min(cap, base * (2 ** (attempt - 1)))
    return delay + random.uniform(0, jitter)


async def schedule_retry(
    attempt: int, base: float = 0.5, cap: float = 8.0, jitter: float = 0.1
) -> float:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, cap=cap, jitter=jitter)
    await asyncio.sleep(delay)
    return delay
