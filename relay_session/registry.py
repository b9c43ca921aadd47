# =============================================================================
# Relay Session -- Session Registry
# =============================================================================
#
# Owns every SessionController of a process, indexed by session id, and the
# single DeduplicationCache they share.
# =============================================================================

from __future__ import annotations

import asyncio
from typing import Any, Iterator

from ._logging import logger
from .credentials import CredentialStore, FileCredentialStore
from .dedup import DeduplicationCache
from .errors import SessionExistsError, SessionNotFoundError, SessionStateError
from .events import Handler
from .controller import SessionController
from .transport import TransportFactory
from .types import SessionConfig


class SessionRegistry:
    """Create, look up and destroy sessions by id.

    Example::

        async with SessionRegistry(BridgeTransport.factory(url)) as registry:
            await registry.create_session("ops")
            await registry.initialize("ops")
            await registry.wait_until_ready("ops")
            await registry.send("ops", "12345@c.us", "hello")

    Args:
        transport_factory: Default factory for new sessions.
        config: Default config for new sessions; also sizes the shared
            dedup cache.
        credential_store: Store shared by all sessions (default: files under
            ``~/.relay_session/auth``).
        dedup: Shared dedup cache; created from *config* when omitted.
    """

    def __init__(
        self,
        transport_factory: TransportFactory | None = None,
        *,
        config: SessionConfig | None = None,
        credential_store: CredentialStore | None = None,
        dedup: DeduplicationCache | None = None,
    ) -> None:
        self._transport_factory = transport_factory
        self._config = config or SessionConfig()
        self._store = credential_store or FileCredentialStore()
        self._dedup = dedup or DeduplicationCache(
            ttl=self._config.dedup_ttl,
            sweep_interval=self._config.dedup_sweep_interval,
        )
        self._sessions: dict[str, SessionController] = {}
        self._message_handlers: list[Handler] = []
        self._lock = asyncio.Lock()
        self._closed = False

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[SessionController]:
        return iter(list(self._sessions.values()))

    def ids(self) -> list[str]:
        return list(self._sessions)

    @property
    def dedup(self) -> DeduplicationCache:
        return self._dedup

    @property
    def credential_store(self) -> CredentialStore:
        return self._store

    # -- Lifecycle ------------------------------------------------------------

    async def create_session(
        self,
        session_id: str,
        config: SessionConfig | None = None,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> SessionController:
        """Register a new, uninitialized session."""
        factory = transport_factory or self._transport_factory
        if factory is None:
            raise ValueError(
                f"No transport factory for session {session_id!r}: pass one here "
                "or to SessionRegistry()"
            )
        async with self._lock:
            if self._closed:
                raise SessionStateError("Registry is closed")
            if session_id in self._sessions:
                raise SessionExistsError(f"Session {session_id!r} already exists")
            controller = SessionController(
                session_id,
                factory,
                config=config or self._config,
                credential_store=self._store,
                dedup=self._dedup,
            )
            for handler in self._message_handlers:
                controller.on("message", handler)
            self._sessions[session_id] = controller
            self._dedup.start()
        logger.info("Session %s created", session_id)
        return controller

    def get(self, session_id: str) -> SessionController:
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"Unknown session {session_id!r}") from None

    async def destroy_session(self, session_id: str) -> None:
        async with self._lock:
            controller = self._sessions.pop(session_id, None)
            if controller is None:
                raise SessionNotFoundError(f"Unknown session {session_id!r}")
            for handler in self._message_handlers:
                controller.off("message", handler)
            await controller.destroy()
        logger.info("Session %s destroyed", session_id)

    async def close(self) -> None:
        """Destroy every session and stop the shared dedup sweep."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            controllers = list(self._sessions.values())
            self._sessions.clear()
        results = await asyncio.gather(
            *(c.destroy() for c in controllers), return_exceptions=True
        )
        for controller, result in zip(controllers, results):
            if isinstance(result, Exception):
                logger.error("Error destroying session %s: %s", controller.session_id, result)
        await self._dedup.stop()

    async def __aenter__(self) -> SessionRegistry:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # -- Per-session operations -----------------------------------------------

    async def initialize(self, session_id: str) -> None:
        await self.get(session_id).initialize()

    async def wait_until_ready(self, session_id: str, timeout: float | None = None) -> None:
        await self.get(session_id).wait_until_ready(timeout)

    async def wait_for_all_ready(
        self, timeout: float | None = None
    ) -> dict[str, BaseException | None]:
        """Wait for every session concurrently.

        Returns ``{session_id: None}`` for ready sessions and the raised
        exception for the others; never raises for a single session.
        """
        controllers = list(self._sessions.values())
        results = await asyncio.gather(
            *(c.wait_until_ready(timeout) for c in controllers),
            return_exceptions=True,
        )
        outcome: dict[str, BaseException | None] = {}
        for controller, result in zip(controllers, results):
            outcome[controller.session_id] = result if isinstance(result, BaseException) else None
            if result is not None:
                logger.warning("Session %s not ready: %s", controller.session_id, result)
        return outcome

    async def send(self, session_id: str, destination: str, payload: Any, **options: Any) -> Any:
        return await self.get(session_id).send(destination, payload, **options)

    def on_message(self, handler: Handler) -> Handler:
        """Receive deduplicated inbound messages of every session.

        Called as ``handler(session, event)``; may be a coroutine function.
        Usable as a decorator.
        """
        self._message_handlers.append(handler)
        for controller in self._sessions.values():
            controller.on("message", handler)
        return handler

    def off_message(self, handler: Handler) -> None:
        if handler in self._message_handlers:
            self._message_handlers.remove(handler)
            for controller in self._sessions.values():
                controller.off("message", handler)

    def get_stats(self) -> dict[str, Any]:
        return {
            "sessions": {sid: c.get_stats() for sid, c in self._sessions.items()},
            "session_count": len(self._sessions),
            "dedup": self._dedup.get_stats(),
        }
