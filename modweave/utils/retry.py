from __future__ import annotations

import asyncio
import random
from typing import Optional

from ..config import BusConfig


def compute_backoff(
    attempt: int,
    base: float = 1.5,
    jitter: float = 0.5,
    maximum: Optional[float] = None,
) -> float:
    """Compute exponential backoff with jitter, optionally capped."""
    delay = base ** attempt
    if maximum is not None:
        delay = min(delay, maximum)
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, config: Optional[BusConfig] = None) -> None:
    """Sleep for computed backoff delay before retrying."""
    config = config or BusConfig()
    delay = compute_backoff(
        attempt,
        base=config.backoff_base,
        jitter=config.backoff_jitter,
        maximum=config.backoff_max,
    )
    await asyncio.sleep(delay)
