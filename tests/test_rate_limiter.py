"""
Token bucket limiter
"""

import time

import pytest

from src.execution_engine.rate_limiter import TokenBucketLimiter


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestTokenBucketLimiter:

    def test_burst_up_to_capacity(self):
        clock = FakeClock()
        limiter = TokenBucketLimiter(100, period=60.0, clock=clock)

        assert all(limiter.try_acquire() for _ in range(100))
        assert not limiter.try_acquire()
        assert limiter.acquired == 100

    def test_refills_at_configured_rate(self):
        clock = FakeClock()
        limiter = TokenBucketLimiter(100, period=60.0, clock=clock)
        for _ in range(100):
            limiter.try_acquire()

        clock.advance(0.6)          # 100/min -> one token every 0.6s
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

        clock.advance(6.0)
        assert limiter.available_tokens == pytest.approx(10.0)

    def test_never_exceeds_capacity(self):
        clock = FakeClock()
        limiter = TokenBucketLimiter(5, period=1.0, clock=clock)
        clock.advance(1000)
        assert limiter.available_tokens == 5.0

    def test_refund_returns_token(self):
        clock = FakeClock()
        limiter = TokenBucketLimiter(1, period=60.0, clock=clock)

        assert limiter.try_acquire()
        limiter.refund()

        assert limiter.acquired == 0
        assert limiter.try_acquire()
        limiter.refund()
        limiter.refund()
        assert limiter.available_tokens == 1.0

    def test_rejects_bad_settings(self):
        with pytest.raises(ValueError):
            TokenBucketLimiter(0)
        with pytest.raises(ValueError):
            TokenBucketLimiter(10, period=0)

    @pytest.mark.asyncio
    async def test_acquire_waits_for_refill(self):
        limiter = TokenBucketLimiter(2, period=0.2)   # 10 tokens/s

        start = time.perf_counter()
        await limiter.acquire()
        await limiter.acquire()
        assert time.perf_counter() - start < 0.05

        await limiter.acquire()
        assert time.perf_counter() - start >= 0.08
        assert limiter.throttled == 1
        assert limiter.stats()['acquired'] == 3
