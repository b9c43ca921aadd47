# =============================================================================
# Relay Session -- Type Definitions
# =============================================================================

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Mapping

from .constants import (
    BACKOFF_CAP,
    DEDUP_SWEEP_INTERVAL,
    DEDUP_TTL,
    ESCALATION_COOLDOWN,
    FALLBACK_POLL_INTERVAL,
    HEALTH_CHECK_INTERVAL,
    IN_FLIGHT_FORCE_AFTER,
    IN_FLIGHT_WARN_AFTER,
    INIT_RETRY_BASE_DELAY,
    MAX_INIT_RETRIES,
    MAX_RECONNECT_ATTEMPTS,
    MAX_REINIT_ATTEMPTS,
    MAX_STATE_RETRIES,
    PAIRING_GRACE_PERIOD,
    PAIRING_TIMEOUT,
    RATE_LIMIT_CAPACITY,
    RATE_LIMIT_MIN_SPACING,
    RATE_LIMIT_WINDOW,
    READY_TIMEOUT,
    RECONNECT_BASE_DELAY,
    SEND_MAX_RETRIES,
    SEND_RETRY_DELAY,
    STATE_RETRY_DELAY_MAX,
    STATE_RETRY_DELAY_MIN,
)


class SessionState(str, Enum):
    """Session lifecycle state.

    Typical flow: UNINITIALIZED -> INITIALIZING -> (AWAITING_PAIRING) ->
    AUTHENTICATING -> READY. TRANSIENT_DOWN and REINITIALIZING are part of
    automatic recovery, TERMINAL_DOWN needs a re-pair, DESTROYED is final.
    """

    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    AWAITING_PAIRING = "awaiting_pairing"
    AUTHENTICATING = "authenticating"
    READY = "ready"
    TRANSIENT_DOWN = "transient_down"
    TERMINAL_DOWN = "terminal_down"
    REINITIALIZING = "reinitializing"
    DESTROYED = "destroyed"


class TransportState(str, Enum):
    """Point-in-time transport state, normalised across vendors."""

    CONNECTED = "connected"
    CONNECTING = "connecting"
    DISCONNECTED = "disconnected"
    UNKNOWN = "unknown"


class DisconnectCategory(str, Enum):
    """How a disconnect reason affects recovery.

    TERMINAL -- credential invalid, re-pair required, no retry.
    TRANSIENT -- retry with backoff.
    UNKNOWN -- retried like TRANSIENT but tracked for escalation.
    """

    TERMINAL = "terminal"
    TRANSIENT = "transient"
    UNKNOWN = "unknown"


class HealthVerdict(str, Enum):
    """Outcome of a single health check run."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ESCALATED = "escalated"
    COOLDOWN = "cooldown"
    GRACE = "grace"
    IN_FLIGHT = "in_flight"
    SKIPPED = "skipped"


@dataclass
class Session:
    """Mutable record of one session, owned by its SessionController.

    Timestamps are wall-clock epoch seconds except ``connecting_since``,
    which is ``time.monotonic()`` because it is only used for durations.
    """

    id: str
    state: SessionState = SessionState.UNINITIALIZED
    last_pairing_issued_at: float | None = None
    last_authenticated_at: float | None = None
    last_ready_at: float | None = None
    last_disconnect_reason: str | None = None
    last_disconnect_at: float | None = None
    last_state_change_at: float | None = None
    retry_attempt: int = 0
    init_attempt: int = 0
    reinit_attempt: int = 0
    unknown_state_streak: int = 0
    auth_failure_count: int = 0
    authenticated: bool = False
    connecting_since: float | None = None
    last_error: BaseException | None = None
    fatal_error: BaseException | None = None

    def snapshot(self) -> dict[str, Any]:
        """Plain-dict view, safe to log or serialise."""
        return {
            "id": self.id,
            "state": self.state.value,
            "authenticated": self.authenticated,
            "last_pairing_issued_at": self.last_pairing_issued_at,
            "last_authenticated_at": self.last_authenticated_at,
            "last_ready_at": self.last_ready_at,
            "last_disconnect_reason": self.last_disconnect_reason,
            "last_disconnect_at": self.last_disconnect_at,
            "retry_attempt": self.retry_attempt,
            "init_attempt": self.init_attempt,
            "reinit_attempt": self.reinit_attempt,
            "unknown_state_streak": self.unknown_state_streak,
            "auth_failure_count": self.auth_failure_count,
            "last_error": repr(self.last_error) if self.last_error else None,
            "fatal_error": repr(self.fatal_error) if self.fatal_error else None,
        }


@dataclass
class QueuedMessage:
    """An outbound send waiting in (or running through) a DispatchQueue."""

    id: str
    destination: str | None
    payload: Any
    enqueued_at: float
    attempt: int = 0


@dataclass(frozen=True)
class RateLimitConfig:
    """Token bucket settings for a session's outbound queue.

    Attributes:
        capacity: Sends allowed per window.
        window: Seconds after which the bucket is refilled to full.
        min_spacing: Minimum seconds between two consecutive sends.
    """

    capacity: int = RATE_LIMIT_CAPACITY
    window: float = RATE_LIMIT_WINDOW
    min_spacing: float = RATE_LIMIT_MIN_SPACING

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> RateLimitConfig:
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key == "capacity":
                kwargs["capacity"] = int(value)
            elif key == "windowMs":
                kwargs["window"] = float(value) / 1000.0
            elif key == "minSpacingMs":
                kwargs["min_spacing"] = float(value) / 1000.0
            elif key in ("window", "min_spacing"):
                kwargs[key] = float(value)
            else:
                raise ValueError(f"Unknown rate limit option: {key!r}")
        return cls(**kwargs)


# camelCase millisecond keys accepted by SessionConfig.from_mapping()
_MS_KEYS = {
    "readyTimeoutMs": "ready_timeout",
    "pairingTimeoutMs": "pairing_timeout",
    "initRetryBaseDelayMs": "init_retry_base_delay",
    "reconnectBaseDelayMs": "reconnect_base_delay",
    "backoffCapMs": "backoff_cap",
    "healthCheckIntervalMs": "health_check_interval",
    "fallbackPollIntervalMs": "fallback_poll_interval",
    "escalationCooldownMs": "escalation_cooldown",
    "pairingGracePeriodMs": "pairing_grace_period",
    "inFlightWarnAfterMs": "in_flight_warn_after",
    "inFlightForceAfterMs": "in_flight_force_after",
    "dedupTtlMs": "dedup_ttl",
    "dedupSweepIntervalMs": "dedup_sweep_interval",
    "sendRetryDelayMs": "send_retry_delay",
}

_CAMEL_KEYS = {
    "maxInitRetries": "max_init_retries",
    "maxReconnectAttempts": "max_reconnect_attempts",
    "maxStateRetries": "max_state_retries",
    "maxReinitAttempts": "max_reinit_attempts",
    "maxSendRetries": "max_send_retries",
    "clearCredentialsOnReinit": "clear_credentials_on_reinit",
    "terminalReasons": "terminal_reasons",
    "transientReasons": "transient_reasons",
    "rateLimit": "rate_limit",
}

_INT_FIELDS = frozenset(
    {
        "max_init_retries",
        "max_reconnect_attempts",
        "max_state_retries",
        "max_reinit_attempts",
        "max_send_retries",
    }
)

_TRUTHY = frozenset({"1", "true", "yes", "on"})


@dataclass(frozen=True)
class SessionConfig:
    """Per-session tuning. All durations in seconds.

    Use :meth:`from_env` or :meth:`from_mapping` to build one from
    deployment configuration expressed in milliseconds.
    """

    ready_timeout: float = READY_TIMEOUT
    pairing_timeout: float = PAIRING_TIMEOUT
    max_init_retries: int = MAX_INIT_RETRIES
    init_retry_base_delay: float = INIT_RETRY_BASE_DELAY
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    reconnect_base_delay: float = RECONNECT_BASE_DELAY
    backoff_cap: float = BACKOFF_CAP
    health_check_interval: float = HEALTH_CHECK_INTERVAL
    fallback_poll_interval: float = FALLBACK_POLL_INTERVAL
    max_state_retries: int = MAX_STATE_RETRIES
    state_retry_delay: tuple[float, float] = (
        STATE_RETRY_DELAY_MIN,
        STATE_RETRY_DELAY_MAX,
    )
    max_reinit_attempts: int = MAX_REINIT_ATTEMPTS
    escalation_cooldown: float = ESCALATION_COOLDOWN
    pairing_grace_period: float = PAIRING_GRACE_PERIOD
    in_flight_warn_after: float = IN_FLIGHT_WARN_AFTER
    in_flight_force_after: float = IN_FLIGHT_FORCE_AFTER
    dedup_ttl: float = DEDUP_TTL
    dedup_sweep_interval: float = DEDUP_SWEEP_INTERVAL
    rate_limit: RateLimitConfig = field(default_factory=RateLimitConfig)
    max_send_retries: int = SEND_MAX_RETRIES
    send_retry_delay: float = SEND_RETRY_DELAY
    clear_credentials_on_reinit: bool = False
    terminal_reasons: tuple[str, ...] = ()
    transient_reasons: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        low, high = self.state_retry_delay
        if low < 0 or high < low:
            raise ValueError(f"Invalid state_retry_delay range: {self.state_retry_delay}")
        if self.in_flight_force_after < self.in_flight_warn_after:
            raise ValueError("in_flight_force_after must be >= in_flight_warn_after")
        if self.health_check_interval < 0:
            raise ValueError("health_check_interval must be >= 0 (0 disables)")
        if self.fallback_poll_interval <= 0:
            raise ValueError("fallback_poll_interval must be > 0")

    @property
    def health_check_enabled(self) -> bool:
        return self.health_check_interval > 0

    def with_overrides(self, **changes: Any) -> SessionConfig:
        return replace(self, **changes)

    # -- Loaders --------------------------------------------------------------

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> SessionConfig:
        """Build from a dict with camelCase ``*Ms`` keys or snake_case keys."""
        names = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key in _MS_KEYS:
                kwargs[_MS_KEYS[key]] = float(value) / 1000.0
                continue
            name = _CAMEL_KEYS.get(key, key)
            if name not in names:
                raise ValueError(f"Unknown session option: {key!r}")
            if name == "rate_limit" and isinstance(value, Mapping):
                value = RateLimitConfig.from_mapping(value)
            elif name in ("terminal_reasons", "transient_reasons"):
                value = tuple(value)
            elif name == "state_retry_delay":
                value = (float(value[0]), float(value[1]))
            elif name in _INT_FIELDS:
                value = int(value)
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_env(
        cls,
        environ: Mapping[str, str] | None = None,
        *,
        prefix: str = "RELAY_",
    ) -> SessionConfig:
        """Build from environment variables.

        Durations use ``<PREFIX><NAME>_MS`` (e.g. ``RELAY_READY_TIMEOUT_MS``),
        counts use ``<PREFIX><NAME>`` (e.g. ``RELAY_MAX_INIT_RETRIES``).
        Unset or empty variables keep their defaults.
        """
        env = os.environ if environ is None else environ

        def get(name: str) -> str | None:
            raw = env.get(prefix + name)
            if raw is None or not raw.strip():
                return None
            return raw.strip()

        kwargs: dict[str, Any] = {}
        for name in _MS_KEYS.values():
            raw = get(name.upper() + "_MS")
            if raw is not None:
                kwargs[name] = float(raw) / 1000.0
        for name in _INT_FIELDS:
            raw = get(name.upper())
            if raw is not None:
                kwargs[name] = int(raw)

        raw = get("AUTH_CLEAR_SESSION_ON_REINIT")
        if raw is not None:
            kwargs["clear_credentials_on_reinit"] = raw.lower() in _TRUTHY

        for name in ("terminal_reasons", "transient_reasons"):
            raw = get(name.upper())
            if raw is not None:
                kwargs[name] = tuple(r.strip() for r in raw.split(",") if r.strip())

        rate: dict[str, Any] = {}
        raw = get("RATE_LIMIT_CAPACITY")
        if raw is not None:
            rate["capacity"] = int(raw)
        raw = get("RATE_LIMIT_WINDOW_MS")
        if raw is not None:
            rate["window"] = float(raw) / 1000.0
        raw = get("RATE_LIMIT_MIN_SPACING_MS")
        if raw is not None:
            rate["min_spacing"] = float(raw) / 1000.0
        if rate:
            kwargs["rate_limit"] = RateLimitConfig(**rate)

        return cls(**kwargs)
