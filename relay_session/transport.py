# =============================================================================
# Relay Session -- Transport Contract
# =============================================================================
#
# The vendor connection is abstracted behind Transport. A controller builds
# a fresh transport for every initialize through a factory:
#
#     def factory(session_id: str, credential: Credential | None) -> Transport
#
# Events a transport emits (positional arguments after the event name):
#
#     pairing_challenge   payload            -- e.g. QR string to scan
#     authenticated       credential | None  -- credential to persist
#     auth_failure        error
#     ready
#     disconnected        reason
#     message             event              -- inbound message object
# =============================================================================

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping

from .events import EventEmitter, Handler

Credential = Mapping[str, Any]

TransportFactory = Callable[[str, "Credential | None"], "Transport"]

TRANSPORT_EVENTS = (
    "pairing_challenge",
    "authenticated",
    "auth_failure",
    "ready",
    "disconnected",
    "message",
)


class Transport(ABC):
    """Base class for vendor transports.

    Subclasses implement the four I/O methods and call :meth:`_emit` when
    the vendor reports something. Listener bookkeeping is shared.
    """

    def __init__(self) -> None:
        self._emitter = EventEmitter()

    def on(self, event: str, handler: Handler) -> Handler:
        return self._emitter.on(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        self._emitter.off(event, handler)

    def listener_count(self, event: str) -> int:
        return self._emitter.listener_count(event)

    def _emit(self, event: str, *args: Any) -> int:
        return self._emitter.emit(event, *args)

    @abstractmethod
    async def initialize(self) -> None:
        """Start the connection. Returns once the vendor client is launched.

        Raises :class:`~relay_session.errors.TransientConnectivityError` for
        retryable failures, :class:`~relay_session.errors.TerminalSessionError`
        when the credential is rejected, and
        :class:`~relay_session.errors.FatalDependencyError` when a runtime
        capability is missing.
        """

    @abstractmethod
    async def get_connection_state(self) -> Any:
        """Current vendor state; normalised with ``normalize_transport_state``."""

    @abstractmethod
    async def send(
        self, destination: str, payload: Any, options: Mapping[str, Any] | None = None
    ) -> Any:
        """Deliver one outbound message. The return value is passed through."""

    @abstractmethod
    async def close(self) -> None:
        """Release the vendor connection. Must be safe to call twice."""
