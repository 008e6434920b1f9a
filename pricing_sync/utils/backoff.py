"""Exponential backoff helpers.

Pure functions of (attempt, policy): no timers, no sleeping. Callers decide
how to wait (an injected async sleep, or a scheduled timestamp).
"""
from __future__ import annotations

import random
from datetime import datetime, timedelta
from typing import Mapping, Optional

from pricing_sync.config import BACKOFF_POLICY


def compute_backoff_seconds(attempt: int, *, base: Optional[float] = None, factor: Optional[float] = None, max_seconds: Optional[float] = None, jitter_pct: Optional[float] = None) -> float:
    """Compute exponential backoff delay with optional jitter."""
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else BACKOFF_POLICY["base_seconds"])
    factor = float(factor if factor is not None else BACKOFF_POLICY["factor"])
    max_seconds = float(max_seconds if max_seconds is not None else BACKOFF_POLICY["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else BACKOFF_POLICY["jitter_pct"])

    delay = base * (factor ** (attempt - 1))
    delay = min(delay, max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


def next_attempt_at(now: datetime, attempt: int, policy: Mapping[str, int | float]) -> datetime:
    """Timestamp for the next attempt under a RETRY_POLICY entry."""
    delay = compute_backoff_seconds(
        attempt,
        base=policy["base_delay_seconds"],
        factor=policy["factor"],
        max_seconds=policy["max_delay_seconds"],
        jitter_pct=0.0,
    )
    return now + timedelta(seconds=delay)


__all__ = ["compute_backoff_seconds", "next_attempt_at"]
