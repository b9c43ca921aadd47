"""Session lifecycle and delivery assurance for real-time messaging clients.

Keeps a long-lived, authenticated session to a remote messaging service
usable: pairing, readiness detection (with a fallback poller), transient vs.
terminal disconnect handling, health escalation, rate-limited outbound
sends and deduplicated inbound messages.

Usage::

    from relay_session import BridgeTransport, SessionRegistry

    async with SessionRegistry(BridgeTransport.factory(url)) as registry:
        session = await registry.create_session("ops")
        session.on("pairing_challenge", lambda s, qr: print(qr))
        await session.initialize()
        await session.wait_until_ready(timeout=120)
        await session.send("12345@c.us", "hello")

Optional extras::

    pip install relay-session[fast]   # orjson
"""

from ._version import __version__
from .backoff import BackoffPolicy
from .bridge import BridgeTransport
from .classifier import (
    DisconnectClassifier,
    classify_disconnect,
    normalize_transport_state,
)
from .controller import SessionController
from .credentials import (
    CredentialStore,
    FileCredentialStore,
    MemoryCredentialStore,
)
from .dedup import DeduplicationCache
from .dispatch_queue import DispatchQueue
from .errors import (
    FatalDependencyError,
    PairingTimeoutError,
    RateLimitExceededError,
    ReadyTimeoutError,
    RelaySessionError,
    SessionDestroyedError,
    SessionExistsError,
    SessionNotFoundError,
    SessionNotReadyError,
    SessionStateError,
    TerminalSessionError,
    TransientConnectivityError,
)
from .events import EventEmitter
from .monitor import ReadinessMonitor
from .rate_limiter import TokenBucketRateLimiter
from .registry import SessionRegistry
from .transport import Transport
from .types import (
    DisconnectCategory,
    HealthVerdict,
    QueuedMessage,
    RateLimitConfig,
    Session,
    SessionConfig,
    SessionState,
    TransportState,
)

__all__ = [
    "__version__",
    "BackoffPolicy",
    "BridgeTransport",
    "CredentialStore",
    "DeduplicationCache",
    "DisconnectCategory",
    "DisconnectClassifier",
    "DispatchQueue",
    "EventEmitter",
    "FatalDependencyError",
    "FileCredentialStore",
    "HealthVerdict",
    "MemoryCredentialStore",
    "PairingTimeoutError",
    "QueuedMessage",
    "RateLimitConfig",
    "RateLimitExceededError",
    "ReadinessMonitor",
    "ReadyTimeoutError",
    "RelaySessionError",
    "Session",
    "SessionConfig",
    "SessionController",
    "SessionDestroyedError",
    "SessionExistsError",
    "SessionNotFoundError",
    "SessionNotReadyError",
    "SessionRegistry",
    "SessionState",
    "SessionStateError",
    "TerminalSessionError",
    "TokenBucketRateLimiter",
    "TransientConnectivityError",
    "Transport",
    "TransportState",
    "classify_disconnect",
    "normalize_transport_state",
]
