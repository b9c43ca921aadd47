"""Tests for the rate-limited outbound dispatch queue."""

import asyncio

import pytest

from relay_session.dispatch_queue import DispatchQueue, is_rate_limit_error
from relay_session.errors import (
    RateLimitExceededError,
    SessionDestroyedError,
    TransientConnectivityError,
)
from relay_session.types import RateLimitConfig

UNLIMITED = RateLimitConfig(capacity=1000, window=60.0, min_spacing=0.0)


def make_queue(clock, rate_limit=UNLIMITED, **kwargs):
    return DispatchQueue(rate_limit, clock=clock, sleep=clock.sleep, name="s1", **kwargs)


class TestOrdering:
    @pytest.mark.asyncio
    async def test_returns_result(self, clock):
        queue = make_queue(clock)

        async def send():
            return {"id": "m1"}

        assert await queue.schedule(send) == {"id": "m1"}
        assert queue.get_stats()["sent"] == 1

    @pytest.mark.asyncio
    async def test_fifo_order(self, clock):
        queue = make_queue(clock)
        order = []

        def sender(n):
            async def send():
                await asyncio.sleep(0)
                order.append(n)
                return n

            return send

        results = await asyncio.gather(*(queue.schedule(sender(n)) for n in range(10)))
        assert order == list(range(10))
        assert results == list(range(10))

    @pytest.mark.asyncio
    async def test_one_send_at_a_time(self, clock):
        queue = make_queue(clock)
        running = 0
        peak = 0

        async def send():
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0)
            await asyncio.sleep(0)
            running -= 1

        await asyncio.gather(*(queue.schedule(send) for _ in range(5)))
        assert peak == 1

    @pytest.mark.asyncio
    async def test_non_rate_error_propagates_once(self, clock):
        queue = make_queue(clock)
        calls = 0

        async def send():
            nonlocal calls
            calls += 1
            raise TransientConnectivityError("socket closed")

        with pytest.raises(TransientConnectivityError):
            await queue.schedule(send)
        assert calls == 1
        assert queue.get_stats()["failed"] == 1


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_min_spacing_between_sends(self, clock):
        queue = make_queue(clock, RateLimitConfig(capacity=40, window=60.0, min_spacing=0.35))
        times = []

        async def send():
            times.append(clock.now)

        await asyncio.gather(*(queue.schedule(send) for _ in range(5)))
        gaps = [b - a for a, b in zip(times, times[1:])]
        assert all(g >= 0.35 - 1e-9 for g in gaps)

    @pytest.mark.asyncio
    async def test_window_capacity(self, clock):
        queue = make_queue(clock, RateLimitConfig(capacity=40, window=60.0, min_spacing=0.35))
        times = []

        async def send():
            times.append(clock.now)

        await asyncio.gather(*(queue.schedule(send) for _ in range(41)))
        assert len(times) == 41
        assert times[40] >= times[0] + 60.0
        for i in range(len(times) - 40):
            assert times[i + 40] - times[i] >= 60.0


class TestRetry:
    @pytest.mark.asyncio
    async def test_linear_retry_then_success(self, clock):
        queue = make_queue(clock, max_retries=3, retry_delay=1.0)
        calls = 0

        async def send():
            nonlocal calls
            calls += 1
            if calls < 3:
                raise RateLimitExceededError()
            return "ok"

        assert await queue.schedule(send) == "ok"
        assert calls == 3
        assert clock.sleeps == [1.0, 2.0]
        assert queue.get_stats()["retried"] == 2

    @pytest.mark.asyncio
    async def test_retries_exhausted(self, clock):
        queue = make_queue(clock, max_retries=3, retry_delay=1.0)
        calls = 0

        async def send():
            nonlocal calls
            calls += 1
            raise RateLimitExceededError(retry_after=5.0)

        with pytest.raises(RateLimitExceededError):
            await queue.schedule(send)
        assert calls == 4
        assert clock.sleeps == [1.0, 2.0, 3.0]

    @pytest.mark.asyncio
    async def test_custom_predicate(self, clock):
        queue = make_queue(
            clock,
            max_retries=1,
            is_rate_limited=lambda exc: "429" in str(exc),
        )
        calls = 0

        async def send():
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("HTTP 429")
            return "ok"

        assert await queue.schedule(send) == "ok"
        assert calls == 2

    def test_default_predicate(self):
        assert is_rate_limit_error(RateLimitExceededError())
        assert not is_rate_limit_error(RuntimeError("429"))


class TestClose:
    @pytest.mark.asyncio
    async def test_close_rejects_queued(self, clock):
        queue = make_queue(clock)
        release = asyncio.Event()
        started = asyncio.Event()

        async def slow():
            started.set()
            await release.wait()
            return "first"

        async def fast():
            return "second"

        first = asyncio.ensure_future(queue.schedule(slow))
        await started.wait()
        second = asyncio.ensure_future(queue.schedule(fast))
        await asyncio.sleep(0)
        assert queue.counts() == {"queued": 1, "running": 1, "pending_retries": 0}

        await queue.close()
        release.set()

        assert await first == "first"
        with pytest.raises(SessionDestroyedError):
            await second
        assert queue.counts()["queued"] == 0

    @pytest.mark.asyncio
    async def test_schedule_after_close(self, clock):
        queue = make_queue(clock)
        await queue.close()

        async def send():
            return None

        with pytest.raises(SessionDestroyedError):
            await queue.schedule(send)
        assert queue.get_stats()["rejected"] == 1

    @pytest.mark.asyncio
    async def test_close_interrupts_retry_wait(self):
        queue = DispatchQueue(UNLIMITED, max_retries=3, retry_delay=30.0)
        calls = 0

        async def send():
            nonlocal calls
            calls += 1
            raise RateLimitExceededError()

        task = asyncio.ensure_future(queue.schedule(send))
        await asyncio.sleep(0.01)
        assert queue.counts()["pending_retries"] == 1
        await queue.close()
        with pytest.raises(SessionDestroyedError):
            await asyncio.wait_for(task, 1.0)
        assert calls == 1

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, clock):
        queue = make_queue(clock)
        await queue.close()
        await queue.close()
        assert queue.closed
