# =============================================================================
# Relay Session -- Error Types
# =============================================================================


class RelaySessionError(Exception):
    """Base exception for all relay session errors."""


class TransientConnectivityError(RelaySessionError):
    """Connectivity failure expected to clear on retry (network, restart)."""


class ReadyTimeoutError(TransientConnectivityError):
    """``wait_until_ready`` gave up before the session became usable.

    The message always carries a full diagnostic (state, auth status,
    last error, remediation) because operators read nothing else.
    """

    def __init__(self, message: str, diagnostics: dict | None = None) -> None:
        self.diagnostics = diagnostics or {}
        super().__init__(message)


class TerminalSessionError(RelaySessionError):
    """Credential invalidated (logout, revoked, replaced). Re-pair required."""

    def __init__(self, message: str, reason: str | None = None) -> None:
        self.reason = reason
        super().__init__(message)


class PairingTimeoutError(RelaySessionError):
    """Pairing challenge was not completed in time."""


class RateLimitExceededError(RelaySessionError):
    """Remote side refused a send because of rate limiting."""

    def __init__(self, retry_after: float = 0.0, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(
            message or f"Rate limit exceeded. Retry after {retry_after:.1f}s"
        )


class FatalDependencyError(RelaySessionError):
    """A required runtime capability is missing; automatic recovery is off."""


class SessionStateError(RelaySessionError):
    """Operation is not valid in the session's current state."""


class SessionNotReadyError(SessionStateError):
    """Send attempted while the session is not READY."""


class SessionDestroyedError(SessionStateError):
    """Session was destroyed; the handle can no longer be used."""


class SessionExistsError(RelaySessionError):
    """A session with the same id is already registered."""


class SessionNotFoundError(RelaySessionError):
    """No session registered under the requested id."""
