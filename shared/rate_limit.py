"""Async token bucket used to pace background enqueues."""

from __future__ import annotations

import asyncio
import time
from typing import Callable


class TokenBucket:
    """Token bucket refilled continuously at *rate* tokens per second.

    ``capacity`` bounds the burst. ``acquire()`` waits until a token is
    available; ``try_acquire()`` never waits.
    """

    def __init__(
        self,
        rate: float,
        capacity: int,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._last_refill)
        self._tokens = min(float(self.capacity), self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                if self.try_acquire():
                    return
                wait_time = (1.0 - self._tokens) / self.rate
            await asyncio.sleep(min(wait_time, 1.0))
