"""Tests for the windowed token bucket rate limiter."""

import pytest

from relay_session.rate_limiter import TokenBucketRateLimiter
from relay_session.types import RateLimitConfig


@pytest.fixture
def limiter(clock):
    return TokenBucketRateLimiter(
        capacity=3, window=60.0, min_spacing=0.35, clock=clock, sleep=clock.sleep
    )


class TestTokenBucketRateLimiter:
    def test_starts_full(self, limiter):
        assert limiter.available_tokens == 3
        assert limiter.can_send() is True
        assert limiter.window_reset_at is None

    def test_consume_reduces_tokens(self, limiter):
        assert limiter.try_consume() is True
        assert limiter.available_tokens == 2

    def test_first_consume_opens_window(self, limiter, clock):
        limiter.try_consume()
        assert limiter.window_reset_at == clock.now + 60.0

    def test_min_spacing(self, limiter, clock):
        assert limiter.try_consume() is True
        assert limiter.try_consume() is False
        assert limiter.get_retry_after() == pytest.approx(0.35)
        clock.advance(0.35)
        assert limiter.try_consume() is True

    def test_empty_bucket_waits_for_window(self, limiter, clock):
        start = clock.now
        for _ in range(3):
            assert limiter.try_consume() is True
            clock.advance(1.0)
        assert limiter.try_consume() is False
        assert limiter.get_retry_after() == pytest.approx(start + 60.0 - clock.now)

    def test_refill_to_full_after_window(self, limiter, clock):
        for _ in range(3):
            limiter.try_consume()
            clock.advance(0.5)
        clock.advance(60.0)
        assert limiter.available_tokens == 3
        assert limiter.window_reset_at is None

    @pytest.mark.asyncio
    async def test_acquire_waits(self, limiter, clock):
        start = clock.now
        for _ in range(4):
            await limiter.acquire()
        # The fourth token only exists once the first window has elapsed
        assert clock.now >= start + 60.0

    @pytest.mark.asyncio
    async def test_acquire_respects_spacing(self, limiter, clock):
        await limiter.acquire()
        first = clock.now
        await limiter.acquire()
        assert clock.now - first >= 0.35

    def test_utilization(self, limiter, clock):
        assert limiter.utilization == 0.0
        limiter.try_consume()
        assert limiter.utilization == pytest.approx(1 / 3)

    def test_reset(self, limiter):
        limiter.try_consume()
        limiter.reset()
        assert limiter.available_tokens == 3
        assert limiter.can_send() is True

    def test_from_config(self):
        rl = TokenBucketRateLimiter.from_config(RateLimitConfig())
        assert rl.capacity == 40
        stats = rl.get_stats()
        assert stats["window"] == 60.0
        assert stats["min_spacing"] == 0.35

    @pytest.mark.parametrize("kwargs", [{"capacity": 0}, {"window": 0}])
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            TokenBucketRateLimiter(**kwargs)
