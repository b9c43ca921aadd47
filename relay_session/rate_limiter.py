# =============================================================================
# Relay Session -- Token Bucket Rate Limiter
# =============================================================================
#
# Fixed-window reservoir: the bucket starts full, the first send opens a
# window, and the bucket is refilled to full when the window elapses. A
# minimum spacing is enforced between consecutive sends on top of that.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable

from .constants import (
    RATE_LIMIT_CAPACITY,
    RATE_LIMIT_MIN_SPACING,
    RATE_LIMIT_WINDOW,
)
from .types import RateLimitConfig

# Float noise below this is treated as "no wait"
_EPSILON = 1e-9


class TokenBucketRateLimiter:
    """Token bucket rate limiter for outbound sends.

    Args:
        capacity: Max sends per window (default 40).
        window: Seconds after which the bucket refills to full (default 60).
        min_spacing: Minimum seconds between two sends (default 0.35).
        clock: Monotonic time source, injectable for tests.
        sleep: Awaitable sleep used by :meth:`acquire`.
    """

    def __init__(
        self,
        capacity: int = RATE_LIMIT_CAPACITY,
        window: float = RATE_LIMIT_WINDOW,
        min_spacing: float = RATE_LIMIT_MIN_SPACING,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if window <= 0:
            raise ValueError("window must be > 0")
        self._capacity = capacity
        self._window = window
        self._min_spacing = max(0.0, min_spacing)
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._window_reset_at: float | None = None
        self._last_consumed_at: float | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_config(cls, config: RateLimitConfig, **kwargs) -> TokenBucketRateLimiter:
        return cls(config.capacity, config.window, config.min_spacing, **kwargs)

    def _refill(self) -> None:
        if (
            self._window_reset_at is not None
            and self._clock() >= self._window_reset_at - _EPSILON
        ):
            self._tokens = self._capacity
            self._window_reset_at = None

    def _spacing_wait(self, now: float) -> float:
        if self._last_consumed_at is None or self._min_spacing <= 0:
            return 0.0
        wait = self._last_consumed_at + self._min_spacing - now
        return wait if wait > _EPSILON else 0.0

    def can_send(self) -> bool:
        return self.get_retry_after() <= 0.0

    def try_consume(self, tokens: int = 1) -> bool:
        self._refill()
        now = self._clock()
        if self._tokens < tokens or self._spacing_wait(now) > 0:
            return False
        self._tokens -= tokens
        self._last_consumed_at = now
        if self._window_reset_at is None:
            self._window_reset_at = now + self._window
        return True

    def get_retry_after(self) -> float:
        """Seconds until the next send is allowed."""
        self._refill()
        now = self._clock()
        wait = self._spacing_wait(now)
        if self._tokens < 1 and self._window_reset_at is not None:
            wait = max(wait, self._window_reset_at - now)
        return max(0.0, wait)

    async def acquire(self) -> None:
        """Wait until a token is available, then take it."""
        async with self._lock:
            while not self.try_consume():
                await self._sleep(self.get_retry_after())

    @property
    def available_tokens(self) -> int:
        self._refill()
        return self._tokens

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def window_reset_at(self) -> float | None:
        self._refill()
        return self._window_reset_at

    @property
    def utilization(self) -> float:
        self._refill()
        return 1.0 - (self._tokens / self._capacity)

    def get_stats(self) -> dict:
        self._refill()
        return {
            "available_tokens": self._tokens,
            "capacity": self._capacity,
            "window": self._window,
            "min_spacing": self._min_spacing,
            "utilization": round(self.utilization, 3),
            "retry_after": round(self.get_retry_after(), 3),
        }

    def reset(self) -> None:
        self._tokens = self._capacity
        self._window_reset_at = None
        self._last_consumed_at = None
