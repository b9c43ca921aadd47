# =============================================================================
# Relay Session -- Deduplication Cache
# =============================================================================
#
# TTL-keyed set of processed inbound event keys. A periodic sweep bounds
# memory; lookups also expire lazily so correctness never depends on the
# sweep running on time.
# =============================================================================

from __future__ import annotations

import asyncio
import time
from typing import Callable

from ._logging import logger
from .constants import DEDUP_SWEEP_INTERVAL, DEDUP_TTL


class DeduplicationCache:
    """Duplicate suppression for inbound events.

    Keys are caller-chosen; when the cache is shared between sessions the
    caller must namespace them (``"{session_id}:{message_id}"``).

    Args:
        ttl: Seconds a processed key is remembered (default 24h).
        sweep_interval: Seconds between background sweeps (default 1h).
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl: float = DEDUP_TTL,
        sweep_interval: float = DEDUP_SWEEP_INTERVAL,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl <= 0:
            raise ValueError("ttl must be > 0")
        self._ttl = ttl
        self._sweep_interval = sweep_interval
        self._clock = clock
        self._expires_at: dict[str, float] = {}
        self._sweep_task: asyncio.Task[None] | None = None
        self._duplicates_detected = 0
        self._expired_total = 0

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    def __len__(self) -> int:
        return len(self._expires_at)

    def __contains__(self, key: str) -> bool:
        return self.is_duplicate(key)

    # -- Lookup / mark --------------------------------------------------------

    def is_duplicate(self, key: str) -> bool:
        expires_at = self._expires_at.get(key)
        if expires_at is None:
            return False
        if self._clock() >= expires_at:
            del self._expires_at[key]
            self._expired_total += 1
            return False
        return True

    def mark_processed(self, key: str) -> None:
        self._expires_at[key] = self._clock() + self._ttl

    def check_and_mark(self, key: str) -> bool:
        """Return True if *key* was already seen, otherwise record it."""
        if self.is_duplicate(key):
            self._duplicates_detected += 1
            return True
        self.mark_processed(key)
        return False

    # -- Sweep ----------------------------------------------------------------

    def sweep(self) -> int:
        """Drop every expired entry. Returns the number removed."""
        now = self._clock()
        expired = [k for k, exp in self._expires_at.items() if now >= exp]
        for k in expired:
            del self._expires_at[k]
        if expired:
            self._expired_total += len(expired)
            logger.debug(
                "Dedup sweep removed %d expired entries, %d remain",
                len(expired),
                len(self._expires_at),
            )
        return len(expired)

    def start(self) -> None:
        """Start the background sweep on the running loop (idempotent)."""
        if self.running or self._sweep_interval <= 0:
            return
        self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def stop(self) -> None:
        task = self._sweep_task
        self._sweep_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def clear(self) -> None:
        self._expires_at.clear()

    def get_stats(self) -> dict:
        return {
            "size": len(self._expires_at),
            "ttl": self._ttl,
            "sweep_interval": self._sweep_interval,
            "duplicates_detected": self._duplicates_detected,
            "expired_total": self._expired_total,
            "sweeping": self.running,
        }
