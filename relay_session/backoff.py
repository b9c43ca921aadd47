# =============================================================================
# Relay Session -- Backoff Policy
# =============================================================================

from __future__ import annotations

import random
from dataclasses import dataclass, field

from .constants import (
    BACKOFF_CAP,
    BACKOFF_JITTER_RATIO,
    INIT_RETRY_BASE_DELAY,
    MAX_INIT_RETRIES,
    MAX_RECONNECT_ATTEMPTS,
    RECONNECT_BASE_DELAY,
)


@dataclass
class BackoffPolicy:
    """Exponential backoff with additive jitter.

    ``delay(n) = min(base * 2**(n-1), cap) + U[0, jitter_ratio * capped]``

    Attempts are 1-based. Pass a seeded ``random.Random`` as *rng* for
    reproducible delays.

    Attributes:
        base_delay: Delay in seconds for the first attempt.
        cap: Upper bound applied before jitter.
        max_attempts: Attempts allowed before :meth:`exhausted` is True.
        jitter_ratio: Fraction of the capped delay used as jitter range.
    """

    base_delay: float = RECONNECT_BASE_DELAY
    cap: float = BACKOFF_CAP
    max_attempts: int = MAX_RECONNECT_ATTEMPTS
    jitter_ratio: float = BACKOFF_JITTER_RATIO
    rng: random.Random = field(default_factory=random.Random, repr=False)

    @classmethod
    def for_init(cls, **kwargs) -> BackoffPolicy:
        kwargs.setdefault("base_delay", INIT_RETRY_BASE_DELAY)
        kwargs.setdefault("max_attempts", MAX_INIT_RETRIES)
        return cls(**kwargs)

    @classmethod
    def for_reconnect(cls, **kwargs) -> BackoffPolicy:
        kwargs.setdefault("base_delay", RECONNECT_BASE_DELAY)
        kwargs.setdefault("max_attempts", MAX_RECONNECT_ATTEMPTS)
        return cls(**kwargs)

    def base(self, attempt: int) -> float:
        """Capped delay without jitter."""
        attempt = max(1, attempt)
        # Guard the exponent: 2**1100 overflows float multiplication
        exponent = min(attempt - 1, 64)
        return min(self.base_delay * (2**exponent), self.cap)

    def delay(self, attempt: int) -> float:
        capped = self.base(attempt)
        if self.jitter_ratio <= 0:
            return capped
        return capped + self.rng.uniform(0.0, self.jitter_ratio * capped)

    def exhausted(self, attempt: int) -> bool:
        """True when *attempt* is past the allowed number of attempts."""
        return attempt > self.max_attempts
