"""Delay helpers for the collection loop.

All values are milliseconds; callers convert to seconds for asyncio.sleep.
"""
from __future__ import annotations

import random
from typing import Optional

from .models import SessionConfig


def random_delay(min_ms: float, max_ms: float, rng: Optional[random.Random] = None) -> float:
    """Uniform delay in [min_ms, max_ms]."""
    if max_ms < min_ms:
        min_ms, max_ms = max_ms, min_ms
    return (rng or random).uniform(min_ms, max_ms)


def next_round_delay(config: SessionConfig, rng: Optional[random.Random] = None) -> float:
    """Base interval plus a random jitter of up to ``interval_jitter_ms``."""
    return config.interval_ms + random_delay(0, config.interval_jitter_ms, rng)


def fault_backoff_delay(config: SessionConfig) -> float:
    """Fixed delay before the round that follows a scroll fault."""
    return float(config.fault_backoff_ms)
