"""
Rate Limiter - token bucket for job admission

Caps how fast jobs may start: `max_calls` per `period` seconds, with
bursts up to `max_calls`. Waiters are served one at a time in arrival
order.
"""

import asyncio
import time
from typing import Callable, Optional


class TokenBucketLimiter:
    """Async token bucket"""

    def __init__(self, max_calls: int, period: float = 60.0,
                 clock: Optional[Callable[[], float]] = None):
        if max_calls <= 0:
            raise ValueError("max_calls must be positive")
        if period <= 0:
            raise ValueError("period must be positive")

        self.capacity = float(max_calls)
        self.refill_rate = max_calls / period      # Tokens per second
        self._clock = clock or time.monotonic

        self.tokens = self.capacity
        self.last_refill = self._clock()
        self._lock = asyncio.Lock()

        # Usage tracking
        self.acquired = 0
        self.throttled = 0

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self.tokens

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    def try_acquire(self) -> bool:
        """Take a token if one is available right now"""
        self._refill()
        if self.tokens >= 1.0:
            self.tokens -= 1.0
            self.acquired += 1
            return True
        return False

    def refund(self) -> None:
        """Give back a token whose work never started"""
        self._refill()
        self.tokens = min(self.capacity, self.tokens + 1.0)
        self.acquired = max(self.acquired - 1, 0)

    async def acquire(self) -> None:
        """Wait until a token is available and take it"""
        async with self._lock:
            waited = False
            while not self.try_acquire():
                waited = True
                await asyncio.sleep((1.0 - self.tokens) / self.refill_rate)
            if waited:
                self.throttled += 1

    def stats(self) -> dict:
        return {
            'capacity': self.capacity,
            'available_tokens': self.available_tokens,
            'acquired': self.acquired,
            'throttled': self.throttled
        }
