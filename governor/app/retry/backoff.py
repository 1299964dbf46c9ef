"""Jittered exponential backoff for retrying failed operations."""

import math
import random
from typing import Callable, Optional

from governor.app.core.config import settings


def calculate_backoff(
    attempt: int,
    base_delay: Optional[int] = None,
    max_delay: Optional[int] = None,
    jitter_factor: Optional[float] = None,
    rng: Callable[[], float] = random.random,
) -> int:
    """Calculate the retry delay for an attempt, in milliseconds.

    ``min(max_delay, base_delay * 2 ** attempt)`` plus uniform jitter of up
    to ``jitter_factor`` of that delay in either direction, floored and
    never negative. Defaults come from settings (1000 ms, 30000 ms, 0.3).

    Args:
        attempt: Retry attempt number (0-indexed)
        base_delay: Delay for attempt 0 in milliseconds
        max_delay: Cap applied before jitter, in milliseconds
        jitter_factor: Maximum relative jitter (0 disables jitter)
        rng: Returns a float in [0, 1); injectable for tests

    Returns:
        Delay in whole milliseconds
    """
    base_delay = settings.backoff_base_delay_ms if base_delay is None else base_delay
    max_delay = settings.backoff_max_delay_ms if max_delay is None else max_delay
    jitter_factor = settings.backoff_jitter_factor if jitter_factor is None else jitter_factor

    # bound the exponent for very large attempt numbers
    exponential = min(max_delay, base_delay * 2 ** min(max(attempt, 0), 64))
    jitter = exponential * jitter_factor * (rng() * 2 - 1)
    return max(0, math.floor(exponential + jitter))


def combine_delays(retry_after: Optional[int], backoff: Optional[int]) -> int:
    """Delay for a caller that is both rate-limited and retrying failures."""
    return max(retry_after or 0, backoff or 0)
