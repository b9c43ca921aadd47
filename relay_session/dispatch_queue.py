# =============================================================================
# Relay Session -- Dispatch Queue
# =============================================================================
#
# Per-session outbound queue: strict submission order, one send in flight,
# token-bucket rate limit, bounded retry of sends the remote side refused
# for rate reasons. Every scheduled send resolves or raises exactly once.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from itertools import count
from typing import Any, Awaitable, Callable

from ._logging import logger
from .constants import SEND_MAX_RETRIES, SEND_RETRY_DELAY
from .errors import RateLimitExceededError, SessionDestroyedError
from .rate_limiter import TokenBucketRateLimiter
from .types import QueuedMessage, RateLimitConfig


def is_rate_limit_error(exc: BaseException) -> bool:
    return isinstance(exc, RateLimitExceededError)


class DispatchQueue:
    """Rate-limited FIFO for outbound sends.

    Args:
        rate_limit: Token bucket settings (capacity/window/min spacing).
        max_retries: Extra attempts for rate-limited sends (default 3).
        retry_delay: Linear retry step in seconds; attempt *n* waits
            ``retry_delay * n``.
        is_rate_limited: Predicate deciding whether an exception is a
            rate-limit refusal worth retrying.
        name: Label used in log lines, usually the session id.
        clock: Monotonic time source shared with the rate limiter.
        sleep: Awaitable sleep shared with the rate limiter.
    """

    def __init__(
        self,
        rate_limit: RateLimitConfig | None = None,
        *,
        max_retries: int = SEND_MAX_RETRIES,
        retry_delay: float = SEND_RETRY_DELAY,
        is_rate_limited: Callable[[BaseException], bool] = is_rate_limit_error,
        name: str = "dispatch",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._limiter = TokenBucketRateLimiter.from_config(
            rate_limit or RateLimitConfig(), clock=clock, sleep=sleep
        )
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._is_rate_limited = is_rate_limited
        self._name = name
        self._clock = clock
        self._sleep = sleep

        # asyncio.Lock wakes waiters in FIFO order
        self._slot = asyncio.Lock()
        self._closed = False
        self._closed_event = asyncio.Event()
        self._ids = count(1)

        self._queued: dict[str, QueuedMessage] = {}
        self._in_flight: QueuedMessage | None = None
        self._pending_retries: dict[str, int] = {}

        self._sent = 0
        self._failed = 0
        self._retried = 0
        self._rejected = 0

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def rate_limiter(self) -> TokenBucketRateLimiter:
        return self._limiter

    @property
    def in_flight(self) -> int:
        return 1 if self._in_flight is not None else 0

    # -- Schedule -------------------------------------------------------------

    async def schedule(
        self,
        fn: Callable[[], Awaitable[Any]],
        *,
        destination: str | None = None,
        payload: Any = None,
    ) -> Any:
        """Run *fn* once a token and the send slot are available.

        Returns whatever *fn* returns. Rate-limit refusals are retried up to
        ``max_retries`` times; any other exception propagates unchanged.
        Raises :class:`SessionDestroyedError` if the queue is closed before
        *fn* starts.
        """
        if self._closed:
            self._rejected += 1
            raise SessionDestroyedError(f"Dispatch queue {self._name!r} is closed")

        message = QueuedMessage(
            id=f"{self._name}-{next(self._ids)}",
            destination=destination,
            payload=payload,
            enqueued_at=self._clock(),
        )
        self._queued[message.id] = message
        try:
            async with self._slot:
                self._queued.pop(message.id, None)
                self._reject_if_closed(message)
                self._in_flight = message
                try:
                    return await self._run(fn, message)
                finally:
                    self._in_flight = None
                    self._pending_retries.pop(message.id, None)
        finally:
            self._queued.pop(message.id, None)

    async def _run(self, fn: Callable[[], Awaitable[Any]], message: QueuedMessage) -> Any:
        while True:
            await self._wait_for_token(message)
            message.attempt += 1
            try:
                result = await fn()
            except Exception as exc:
                retries_used = message.attempt - 1
                if not self._is_rate_limited(exc) or retries_used >= self._max_retries:
                    self._failed += 1
                    if self._is_rate_limited(exc):
                        logger.error(
                            "[%s] Send %s to %s still rate limited after %d retries",
                            self._name,
                            message.id,
                            message.destination,
                            retries_used,
                        )
                    raise
                delay = self._retry_delay * message.attempt
                self._retried += 1
                self._pending_retries[message.id] = message.attempt
                logger.warning(
                    "[%s] Send %s rate limited, retry %d/%d in %.1fs",
                    self._name,
                    message.id,
                    message.attempt,
                    self._max_retries,
                    delay,
                )
                await self._interruptible_sleep(delay)
                self._reject_if_closed(message)
                continue
            self._sent += 1
            logger.debug("[%s] Sent %s to %s", self._name, message.id, message.destination)
            return result

    async def _wait_for_token(self, message: QueuedMessage) -> None:
        while True:
            self._reject_if_closed(message)
            if self._limiter.try_consume():
                return
            await self._interruptible_sleep(self._limiter.get_retry_after())

    async def _interruptible_sleep(self, delay: float) -> None:
        """Sleep for *delay*, returning early if the queue is closed."""
        if self._closed:
            return
        sleeper = asyncio.ensure_future(self._sleep(delay))
        closer = asyncio.ensure_future(self._closed_event.wait())
        try:
            await asyncio.wait({sleeper, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, closer):
                if not task.done():
                    task.cancel()
            await asyncio.gather(sleeper, closer, return_exceptions=True)

    def _reject_if_closed(self, message: QueuedMessage) -> None:
        if self._closed:
            self._rejected += 1
            raise SessionDestroyedError(
                f"Dispatch queue {self._name!r} closed before {message.id} was sent"
            )

    # -- Lifecycle ------------------------------------------------------------

    async def close(self) -> None:
        """Reject every send that has not started yet.

        A send whose transport call is already running is allowed to finish.
        """
        if self._closed:
            return
        self._closed = True
        self._closed_event.set()
        if self._queued:
            logger.info(
                "[%s] Closing dispatch queue, rejecting %d queued sends",
                self._name,
                len(self._queued),
            )
        # Let waiters observe the flag before the caller tears down the transport
        await asyncio.sleep(0)

    # -- Stats ----------------------------------------------------------------

    def counts(self) -> dict[str, int]:
        return {
            "queued": len(self._queued),
            "running": self.in_flight,
            "pending_retries": len(self._pending_retries),
        }

    def get_stats(self) -> dict:
        return {
            **self.counts(),
            "sent": self._sent,
            "failed": self._failed,
            "retried": self._retried,
            "rejected": self._rejected,
            "closed": self._closed,
            "rate_limiter": self._limiter.get_stats(),
        }
