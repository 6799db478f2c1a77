"""Exponential backoff with optional jitter."""

import math
import random
from typing import Optional
from .models import RetryConfig


def base_delay(attempt: int, config: RetryConfig) -> float:
    """Un-jittered delay in milliseconds before ``attempt``."""
    if attempt < 1:
        raise ValueError(f"attempt must be >= 1, got {attempt}")
    try:
        grown = config.min_delay * config.factor ** (attempt - 1)
    except OverflowError:
        grown = math.inf
    return min(grown, config.max_delay)


def delay(attempt: int, config: RetryConfig, rng: Optional[random.Random] = None) -> float:
    """Delay in milliseconds to wait before running ``attempt``.

    ``base = min(min_delay * factor ** (attempt - 1), max_delay)``. With
    jitter the base is scaled by a uniform value in [0.5, 1.5) and floored.
    Attempt 1 is never delayed by the scheduler, but the value is defined.
    """
    base = base_delay(attempt, config)
    if not config.jitter:
        return base
    rand = (rng or random).random() + 0.5
    return math.floor(base * rand)


def schedule(config: RetryConfig, rng: Optional[random.Random] = None):
    """Delays awaited before attempts 2..max_attempts."""
    return [delay(attempt, config, rng) for attempt in range(2, config.max_attempts + 1)]
