"""Outbound rate limiter for the upstream pricing API.

Implements a fixed-size window that starts with the first request after a
roll-over: at most ``limit`` requests are admitted per ``window_seconds``.
When the window is full, ``acquire()`` sleeps until it rolls over, resets the
counter and admits the caller. This is cooperative, single-caller throttling
(one job per game runs at a time and batches are issued sequentially from one
execution context), not a distributed limiter.

Usage pattern:
    from pricing_sync.utils.ratelimiter import WindowRateLimiter
    limiter = WindowRateLimiter(limit=500, window_seconds=60)
    waited = await limiter.acquire()

Design notes:
 - Clock and sleep are injected so tests drive time without real waits.
 - An asyncio.Lock serializes acquirers so the counter observes one caller at a time.
 - ``snapshot()`` mirrors the usual X-RateLimit-* header semantics for the health view.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from pricing_sync.config import RATE_LIMIT
from pricing_sync.utils import get_logger

logger = get_logger(__name__)


class WindowRateLimiter:
    def __init__(
        self,
        limit: int | None = None,
        window_seconds: float | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.limit = int(limit if limit is not None else RATE_LIMIT["limit"])
        self.window_seconds = float(window_seconds if window_seconds is not None else RATE_LIMIT["window_seconds"])
        if self.limit < 1 or self.window_seconds <= 0:
            raise ValueError("Rate limit and window must be positive")
        self._clock = clock
        self._sleep = sleep
        self._window_start = clock()
        self._count = 0
        self._lock = asyncio.Lock()

    def _roll_window(self, now: float) -> None:
        if now - self._window_start >= self.window_seconds:
            self._window_start = now
            self._count = 0

    async def acquire(self) -> float:
        """Take one request slot, sleeping until the window rolls over if full.

        Returns the number of seconds spent waiting.
        """
        waited = 0.0
        async with self._lock:
            while True:
                now = self._clock()
                self._roll_window(now)
                if self._count < self.limit:
                    self._count += 1
                    return waited
                wait_time = max(0.0, self.window_seconds - (now - self._window_start))
                logger.info(
                    "Rate limit reached, waiting for window roll-over",
                    limit=self.limit,
                    window_seconds=self.window_seconds,
                    wait_seconds=round(wait_time, 3),
                )
                await self._sleep(wait_time)
                waited += wait_time
                # Window boundary reached (or overshot); start a fresh one.
                self._window_start = self._clock()
                self._count = 0

    def snapshot(self) -> dict:
        now = self._clock()
        elapsed = now - self._window_start
        count = 0 if elapsed >= self.window_seconds else self._count
        return {
            "limit": self.limit,
            "window_seconds": self.window_seconds,
            "count": count,
            "remaining": max(0, self.limit - count),
            "resets_in_seconds": round(max(0.0, self.window_seconds - elapsed), 3) if count else 0.0,
        }


__all__ = ["WindowRateLimiter"]
