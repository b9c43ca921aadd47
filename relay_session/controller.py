# =============================================================================
# Relay Session -- Session Controller
# =============================================================================
#
# Single source of truth for one session's reachability. Every state change
# goes through _transition(), which checks the legal-edge table and cancels
# the timers owned by the state being left.
# =============================================================================

from __future__ import annotations

import asyncio
import random
import time
from functools import partial
from typing import Any, Mapping

from ._logging import logger
from .backoff import BackoffPolicy
from .classifier import DisconnectClassifier, normalize_transport_state
from .credentials import CredentialStore, MemoryCredentialStore
from .dedup import DeduplicationCache
from .dispatch_queue import DispatchQueue
from .errors import (
    FatalDependencyError,
    PairingTimeoutError,
    ReadyTimeoutError,
    SessionDestroyedError,
    SessionNotReadyError,
    SessionStateError,
    TerminalSessionError,
    TransientConnectivityError,
)
from .events import EventEmitter, Handler
from .monitor import ReadinessMonitor
from .transport import Credential, Transport, TransportFactory
from .types import (
    DisconnectCategory,
    Session,
    SessionConfig,
    SessionState,
    TransportState,
)

S = SessionState

_LEGAL_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.UNINITIALIZED: frozenset({S.INITIALIZING, S.DESTROYED}),
    S.INITIALIZING: frozenset(
        {
            S.AWAITING_PAIRING,
            S.AUTHENTICATING,
            S.TRANSIENT_DOWN,
            S.TERMINAL_DOWN,
            S.REINITIALIZING,
            S.DESTROYED,
        }
    ),
    S.AWAITING_PAIRING: frozenset(
        {
            S.AUTHENTICATING,
            S.TRANSIENT_DOWN,
            S.TERMINAL_DOWN,
            S.REINITIALIZING,
            S.DESTROYED,
        }
    ),
    # A rejected stored credential can fall back to a fresh pairing challenge
    S.AUTHENTICATING: frozenset(
        {
            S.READY,
            S.AWAITING_PAIRING,
            S.TRANSIENT_DOWN,
            S.TERMINAL_DOWN,
            S.REINITIALIZING,
            S.DESTROYED,
        }
    ),
    S.READY: frozenset(
        {S.TRANSIENT_DOWN, S.TERMINAL_DOWN, S.REINITIALIZING, S.DESTROYED}
    ),
    S.TRANSIENT_DOWN: frozenset({S.REINITIALIZING, S.TERMINAL_DOWN, S.DESTROYED}),
    # Left only through an explicit initialize()/repair()
    S.TERMINAL_DOWN: frozenset({S.INITIALIZING, S.DESTROYED}),
    S.REINITIALIZING: frozenset(
        {S.INITIALIZING, S.TRANSIENT_DOWN, S.TERMINAL_DOWN, S.DESTROYED}
    ),
    S.DESTROYED: frozenset(),
}

# States in which the transport may already be usable without having said so
_READY_INFERABLE = frozenset({S.INITIALIZING, S.AWAITING_PAIRING, S.AUTHENTICATING})

# States from which a transport disconnect is meaningful
_DISCONNECTABLE = frozenset(
    {S.INITIALIZING, S.AWAITING_PAIRING, S.AUTHENTICATING, S.READY, S.TRANSIENT_DOWN}
)


def is_legal_transition(old: SessionState, new: SessionState) -> bool:
    return new in _LEGAL_TRANSITIONS[old]


def _message_id(event: Any) -> str | None:
    if isinstance(event, Mapping):
        value = event.get("id")
    else:
        value = getattr(event, "id", None)
    if value is None or value == "":
        return None
    return str(value)


class SessionController:
    """Owns one :class:`Session`, its transport, queue and monitor.

    Two-phase usage: construct, then ``await initialize()``. Using a session
    that was never initialized fails fast with :class:`SessionStateError`.

    Example::

        controller = SessionController("ops", transport_factory)
        await controller.initialize()
        await controller.wait_until_ready(timeout=60)
        await controller.send("12345@c.us", "hello")

    Args:
        session_id: External, case-sensitive id.
        transport_factory: ``factory(session_id, credential) -> Transport``;
            called once per initialize.
        config: Tuning; defaults to :class:`SessionConfig`.
        credential_store: Where credentials live between connections.
        dedup: Inbound dedup cache. When omitted the controller owns a
            private one and runs its sweep.
        rng: Random source for backoff jitter and health-check delays.
    """

    def __init__(
        self,
        session_id: str,
        transport_factory: TransportFactory,
        *,
        config: SessionConfig | None = None,
        credential_store: CredentialStore | None = None,
        dedup: DeduplicationCache | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not session_id:
            raise ValueError("session_id must be a non-empty string")
        self._config = config or SessionConfig()
        cfg = self._config
        self._session = Session(id=session_id)
        self._transport_factory = transport_factory
        self._store = credential_store or MemoryCredentialStore()
        self._owns_dedup = dedup is None
        self._dedup = dedup or DeduplicationCache(
            ttl=cfg.dedup_ttl, sweep_interval=cfg.dedup_sweep_interval
        )
        self._rng = rng or random.Random()
        self._classifier = DisconnectClassifier(
            extra_terminal=cfg.terminal_reasons,
            extra_transient=cfg.transient_reasons,
        )
        self._init_backoff = BackoffPolicy.for_init(
            base_delay=cfg.init_retry_base_delay,
            cap=cfg.backoff_cap,
            max_attempts=cfg.max_init_retries,
            rng=self._rng,
        )
        self._reconnect_backoff = BackoffPolicy.for_reconnect(
            base_delay=cfg.reconnect_base_delay,
            cap=cfg.backoff_cap,
            max_attempts=cfg.max_reconnect_attempts,
            rng=self._rng,
        )
        self._queue = DispatchQueue(
            cfg.rate_limit,
            max_retries=cfg.max_send_retries,
            retry_delay=cfg.send_retry_delay,
            name=session_id,
        )
        self._events = EventEmitter()

        self._transport: Transport | None = None
        self._transport_handlers: dict[str, Handler] = {}
        self._init_task: asyncio.Task[None] | None = None
        self._state_timers: list[asyncio.TimerHandle] = []
        self._background_tasks: set[asyncio.Task[Any]] = set()
        self._destroying = False
        self._duplicates_dropped = 0
        self._messages_delivered = 0

        # Subscribes to state_changed, so created last
        self._monitor = ReadinessMonitor(self, cfg, rng=self._rng)

    # -- Properties -----------------------------------------------------------

    @property
    def session(self) -> Session:
        return self._session

    @property
    def session_id(self) -> str:
        return self._session.id

    @property
    def state(self) -> SessionState:
        return self._session.state

    @property
    def is_ready(self) -> bool:
        return self._session.state == S.READY

    @property
    def config(self) -> SessionConfig:
        return self._config

    @property
    def transport(self) -> Transport | None:
        return self._transport

    @property
    def credential_store(self) -> CredentialStore:
        return self._store

    @property
    def dispatch_queue(self) -> DispatchQueue:
        return self._queue

    @property
    def monitor(self) -> ReadinessMonitor:
        return self._monitor

    @property
    def classifier(self) -> DisconnectClassifier:
        return self._classifier

    @property
    def init_in_flight(self) -> bool:
        return self._init_task is not None and not self._init_task.done()

    @property
    def pending_timers(self) -> int:
        return len(self._state_timers)

    # -- Events ---------------------------------------------------------------

    def on(self, event: str, handler: Handler) -> Handler:
        """Subscribe to a controller event (``state_changed``, ``ready``, ...)."""
        return self._events.on(event, handler)

    def once(self, event: str, handler: Handler) -> Handler:
        return self._events.once(event, handler)

    def off(self, event: str, handler: Handler) -> None:
        self._events.off(event, handler)

    # -- State machine --------------------------------------------------------

    def _transition(self, new: SessionState) -> bool:
        old = self._session.state
        if new == old:
            return False
        if not is_legal_transition(old, new):
            raise SessionStateError(
                f"Illegal transition {old.value} -> {new.value} "
                f"for session {self._session.id!r}"
            )
        self._cancel_state_timers()
        self._session.state = new
        self._session.last_state_change_at = time.time()
        logger.debug("[%s] %s -> %s", self._session.id, old.value, new.value)
        self._events.emit("state_changed", self._session, old, new)
        return True

    def _call_later(self, delay: float, callback: Any, *args: Any) -> None:
        """Arm a timer owned by the current state."""

        def fire() -> None:
            # Fired handles are never marked cancelled, so drop ours here
            if handle in self._state_timers:
                self._state_timers.remove(handle)
            callback(*args)

        handle = asyncio.get_running_loop().call_later(delay, fire)
        self._state_timers.append(handle)

    def _cancel_state_timers(self) -> None:
        for handle in self._state_timers:
            handle.cancel()
        self._state_timers.clear()

    def _fire_task(self, coro: Any) -> asyncio.Task[Any]:
        """Schedule a coroutine with a strong reference to prevent GC."""
        task = asyncio.ensure_future(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "[%s] Background task failed: %r", self._session.id, task.exception()
            )

    def _ensure_not_destroyed(self) -> None:
        if self._session.state == S.DESTROYED or self._destroying:
            raise SessionDestroyedError(f"Session {self._session.id!r} was destroyed")

    def _set_fatal(self, error: BaseException) -> None:
        self._session.fatal_error = error
        self._session.last_error = error
        logger.error(
            "[%s] Automatic recovery halted: %s", self._session.id, error
        )
        self._events.emit("fatal_error", self._session, error)

    # -- Initialize -----------------------------------------------------------

    async def initialize(self) -> None:
        """Start the session; idempotent.

        While an initialize is in flight this awaits that attempt instead of
        starting a second one. Returns immediately when READY, or when the
        transport is already launched and waiting for pairing/readiness.

        Returns normally once the transport is launched or a retry has been
        scheduled. Raises the last error once ``max_init_retries`` is
        exhausted, :class:`TerminalSessionError` when the credential is
        rejected, and :class:`FatalDependencyError` when the transport cannot
        run at all.
        """
        self._ensure_not_destroyed()
        if self.init_in_flight:
            await self._await_init(self._init_task)
            return
        state = self._session.state
        if state in (S.READY, S.INITIALIZING, S.AWAITING_PAIRING, S.AUTHENTICATING):
            return
        if self._session.fatal_error is not None:
            raise SessionStateError(
                f"Session {self._session.id!r} has a fatal error "
                f"({self._session.fatal_error}); call clear_fatal_error() first"
            ) from self._session.fatal_error
        if self._owns_dedup:
            self._dedup.start()
        await self._start_initialize("initialize")

    async def _start_initialize(self, reason: str) -> None:
        if not self.init_in_flight:
            self._init_task = asyncio.get_running_loop().create_task(
                self._run_initialize(reason)
            )
            self._init_task.add_done_callback(self._init_done)
        await self._await_init(self._init_task)

    def _spawn_initialize(self, reason: str) -> None:
        """Timer callback: start an initialize nobody awaits."""
        if self._destroying:
            return
        task = self._init_task
        if task is not None and not task.done():
            if task.cancelling():
                # Start once the superseded attempt has unwound
                task.add_done_callback(partial(self._respawn_initialize, reason))
            return
        self._init_task = asyncio.get_running_loop().create_task(
            self._run_initialize(reason)
        )
        self._init_task.add_done_callback(self._init_done)

    def _respawn_initialize(self, reason: str, _task: asyncio.Task[None]) -> None:
        if self._session.state == S.TRANSIENT_DOWN:
            self._spawn_initialize(reason)

    def _init_done(self, task: asyncio.Task[None]) -> None:
        # Retrieve the exception; it was already logged and recorded
        if not task.cancelled():
            task.exception()

    async def _await_init(self, task: asyncio.Task[None] | None) -> None:
        if task is None:
            return
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if task.cancelled() and not (current and current.cancelling()):
                # Superseded (disconnect, pairing timeout, forced reinit, destroy)
                self._ensure_not_destroyed()
                return
            raise

    def _supersede_init(self) -> None:
        """Cancel an in-flight initialize whose transport has gone away."""
        task = self._init_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        logger.debug("[%s] Cancelling in-flight initialize", self._session.id)
        task.cancel()

    async def _cancel_init_task(self) -> None:
        task = self._init_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    async def _run_initialize(self, reason: str) -> None:
        session = self._session
        if session.state not in (S.UNINITIALIZED, S.TERMINAL_DOWN, S.REINITIALIZING):
            self._transition(S.REINITIALIZING)
        await self._teardown_transport()
        self._transition(S.INITIALIZING)
        session.connecting_since = time.monotonic()
        session.authenticated = False
        logger.info(
            "[%s] Initializing (%s, attempt %d/%d)",
            session.id,
            reason,
            session.init_attempt + 1,
            self._config.max_init_retries + 1,
        )

        try:
            credential = await self._store.load(session.id)
            transport = self._transport_factory(session.id, credential)
            self._attach_transport(transport)
            if credential is not None:
                self._transition(S.AUTHENTICATING)
            await transport.initialize()
        except asyncio.CancelledError:
            session.connecting_since = None
            raise
        except TerminalSessionError as exc:
            session.connecting_since = None
            session.last_error = exc
            await self._teardown_transport()
            self._enter_terminal(exc.reason or "TERMINAL_INITIALIZE", exc)
            raise
        except FatalDependencyError as exc:
            session.connecting_since = None
            await self._teardown_transport()
            if session.state != S.TERMINAL_DOWN:
                self._transition(S.TRANSIENT_DOWN)
            self._set_fatal(exc)
            raise
        except Exception as exc:
            session.connecting_since = None
            if isinstance(exc, TransientConnectivityError):
                error = exc
            else:
                error = TransientConnectivityError(f"Initialize failed: {exc}")
                error.__cause__ = exc
            await self._teardown_transport()
            if session.state in (S.TERMINAL_DOWN, S.DESTROYED):
                raise error from exc
            if not self._init_failed(error):
                raise error from exc
            return

        session.connecting_since = None
        logger.info("[%s] Transport launched", session.id)

    def _init_failed(self, error: BaseException) -> bool:
        """Record a failed attempt. Returns True if a retry was scheduled."""
        session = self._session
        session.init_attempt += 1
        session.last_error = error
        if self._session.state != S.TRANSIENT_DOWN:
            self._transition(S.TRANSIENT_DOWN)
        if self._init_backoff.exhausted(session.init_attempt):
            logger.error(
                "[%s] Maximum initialization retries (%d) exceeded: %s",
                session.id,
                self._config.max_init_retries,
                error,
            )
            self._set_fatal(error)
            return False
        delay = self._init_backoff.delay(session.init_attempt)
        logger.warning(
            "[%s] Initialization failed (%s), retry %d/%d in %.1fs",
            session.id,
            error,
            session.init_attempt,
            self._config.max_init_retries,
            delay,
        )
        self._call_later(delay, self._spawn_initialize, "init retry")
        return True

    # -- Transport wiring -----------------------------------------------------

    def _attach_transport(self, transport: Transport) -> None:
        handlers: dict[str, Handler] = {
            "pairing_challenge": partial(self._on_pairing_challenge, transport),
            "authenticated": partial(self._on_authenticated, transport),
            "auth_failure": partial(self._on_auth_failure, transport),
            "ready": partial(self._on_ready, transport),
            "disconnected": partial(self._on_disconnected, transport),
            "message": partial(self._on_message, transport),
        }
        for event, handler in handlers.items():
            transport.on(event, handler)
        self._transport = transport
        self._transport_handlers = handlers

    async def _teardown_transport(self) -> None:
        """Detach our own listeners, then close the transport."""
        transport = self._transport
        handlers = self._transport_handlers
        self._transport = None
        self._transport_handlers = {}
        if transport is None:
            return
        for event, handler in handlers.items():
            transport.off(event, handler)
        try:
            await transport.close()
        except Exception as exc:
            logger.warning("[%s] Error closing transport: %s", self._session.id, exc)

    def _is_current(self, transport: Transport) -> bool:
        if transport is not self._transport:
            logger.debug("[%s] Ignoring event from stale transport", self._session.id)
            return False
        return True

    def _on_pairing_challenge(self, transport: Transport, payload: Any = None) -> None:
        if not self._is_current(transport):
            return
        session = self._session
        if session.state not in (S.INITIALIZING, S.AUTHENTICATING, S.AWAITING_PAIRING):
            logger.debug(
                "[%s] Pairing challenge ignored in state %s",
                session.id,
                session.state.value,
            )
            return
        session.last_pairing_issued_at = time.time()
        session.authenticated = False
        if session.state != S.AWAITING_PAIRING:
            self._transition(S.AWAITING_PAIRING)
            self._call_later(self._config.pairing_timeout, self._on_pairing_timeout)
        logger.info(
            "[%s] Pairing challenge received, complete within %.0fs",
            session.id,
            self._config.pairing_timeout,
        )
        self._events.emit("pairing_challenge", session, payload)

    def _on_pairing_timeout(self) -> None:
        if self._session.state == S.AWAITING_PAIRING:
            self._fire_task(self._pairing_timed_out())

    async def _pairing_timed_out(self) -> None:
        session = self._session
        if session.state != S.AWAITING_PAIRING:
            return
        error = PairingTimeoutError(
            f"Pairing for session {session.id!r} not completed within "
            f"{self._config.pairing_timeout:.0f}s"
        )
        logger.warning("[%s] %s", session.id, error)
        await self._cancel_init_task()
        await self._teardown_transport()
        session.connecting_since = None
        if session.state == S.AWAITING_PAIRING:
            self._init_failed(error)

    def _on_authenticated(self, transport: Transport, credential: Credential | None = None) -> None:
        if not self._is_current(transport):
            return
        session = self._session
        session.authenticated = True
        session.last_authenticated_at = time.time()
        session.auth_failure_count = 0
        session.init_attempt = 0
        if session.state in (S.INITIALIZING, S.AWAITING_PAIRING):
            self._transition(S.AUTHENTICATING)
        logger.info("[%s] Authenticated", session.id)
        if credential:
            self._fire_task(self._store.save(session.id, credential))
        self._events.emit("authenticated", session)

    def _on_auth_failure(self, transport: Transport, error: Any = None) -> None:
        if not self._is_current(transport):
            return
        session = self._session
        session.authenticated = False
        session.auth_failure_count += 1
        failure = TerminalSessionError(
            f"Authentication failed for session {session.id!r}: {error}",
            reason="AUTH_FAILURE",
        )
        session.last_error = failure
        logger.error(
            "[%s] Authentication failed (%d in a row): %s",
            session.id,
            session.auth_failure_count,
            error,
        )
        self._events.emit("auth_failed", session, failure)
        self._fire_task(self._store.clear(session.id))
        self.handle_disconnect("AUTH_FAILURE")

    def _on_ready(self, transport: Transport) -> None:
        if self._is_current(transport):
            self.mark_ready("event")

    def _on_disconnected(self, transport: Transport, reason: Any = None) -> None:
        if self._is_current(transport):
            self.handle_disconnect(reason)

    def _on_message(self, transport: Transport, event: Any) -> None:
        if not self._is_current(transport):
            return
        message_id = _message_id(event)
        if message_id is not None:
            key = f"{self._session.id}:{message_id}"
            if self._dedup.check_and_mark(key):
                self._duplicates_dropped += 1
                logger.debug("[%s] Duplicate message %s dropped", self._session.id, message_id)
                return
        self._messages_delivered += 1
        self._events.emit("message", self._session, event)

    # -- Readiness ------------------------------------------------------------

    def mark_ready(self, source: str = "event") -> bool:
        """Move to READY. Returns False when the current state does not allow it."""
        session = self._session
        if session.state == S.READY:
            return True
        if session.state in (S.INITIALIZING, S.AWAITING_PAIRING):
            session.authenticated = True
            self._transition(S.AUTHENTICATING)
        if session.state != S.AUTHENTICATING:
            logger.debug(
                "[%s] Ready signal (%s) ignored in state %s",
                session.id,
                source,
                session.state.value,
            )
            return False
        self._transition(S.READY)
        session.authenticated = True
        session.last_ready_at = time.time()
        session.retry_attempt = 0
        session.init_attempt = 0
        session.reinit_attempt = 0
        session.unknown_state_streak = 0
        session.auth_failure_count = 0
        session.connecting_since = None
        session.last_error = None
        logger.info("[%s] Session ready (via %s)", session.id, source)
        self._events.emit("ready", session)
        return True

    async def query_transport_state(self) -> TransportState:
        transport = self._transport
        if transport is None:
            return TransportState.DISCONNECTED
        try:
            raw = await transport.get_connection_state()
        except Exception as exc:
            logger.debug("[%s] State query failed: %s", self._session.id, exc)
            return TransportState.UNKNOWN
        return normalize_transport_state(raw)

    async def infer_ready(self, source: str = "inference") -> bool:
        """Promote to READY if the transport reports connected."""
        if self._session.state == S.READY:
            return True
        if self._session.state not in _READY_INFERABLE:
            return False
        state = await self.query_transport_state()
        if state != TransportState.CONNECTED:
            return False
        # The state may have moved while we awaited the transport
        if self._session.state not in _READY_INFERABLE:
            return self._session.state == S.READY
        logger.info("[%s] Transport reports connected, inferring ready", self._session.id)
        return self.mark_ready(source)

    async def wait_until_ready(
        self,
        timeout: float | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """Wait for READY or fail with a diagnostic error.

        Fails fast when the session is uninitialized, destroyed, terminally
        down or halted by a fatal error. Setting *cancel_event* aborts the
        wait with :class:`asyncio.CancelledError`.

        Raises:
            ReadyTimeoutError: *timeout* (default ``ready_timeout``) elapsed.
            TerminalSessionError: a terminal disconnect happened.
        """
        self._ensure_not_destroyed()
        if timeout is None:
            timeout = self._config.ready_timeout
        session = self._session
        if session.state == S.READY:
            return
        self._raise_if_unreachable()

        loop = asyncio.get_running_loop()
        started = loop.time()
        waiter: asyncio.Future[None] = loop.create_future()

        def on_ready(_session: Session) -> None:
            if not waiter.done():
                waiter.set_result(None)

        def on_disconnected(_session: Session, reason: Any, category: DisconnectCategory) -> None:
            if category == DisconnectCategory.TERMINAL and not waiter.done():
                waiter.set_exception(self._terminal_error())

        def on_fatal(_session: Session, error: BaseException) -> None:
            if not waiter.done():
                waiter.set_exception(self._fatal_error_for_waiter(error))

        def on_state(_session: Session, old: SessionState, new: SessionState) -> None:
            if new == S.DESTROYED and not waiter.done():
                waiter.set_exception(
                    SessionDestroyedError(f"Session {session.id!r} was destroyed")
                )

        handlers = {
            "ready": on_ready,
            "disconnected": on_disconnected,
            "fatal_error": on_fatal,
            "state_changed": on_state,
        }
        for event, handler in handlers.items():
            self._events.on(event, handler)

        cancel_watch: asyncio.Task[Any] | None = None
        if cancel_event is not None:

            async def watch_cancel() -> None:
                await cancel_event.wait()
                if not waiter.done():
                    waiter.cancel()

            cancel_watch = loop.create_task(watch_cancel())

        try:
            # Readiness may have happened before anyone was listening
            await self.infer_ready("wait_until_ready")
            if session.state == S.READY and not waiter.done():
                waiter.set_result(None)
            try:
                await asyncio.wait_for(waiter, timeout)
            except TimeoutError:
                elapsed = loop.time() - started
                raise ReadyTimeoutError(
                    self._timeout_message(elapsed), self.diagnostics()
                ) from None
        finally:
            for event, handler in handlers.items():
                self._events.off(event, handler)
            if cancel_watch is not None:
                cancel_watch.cancel()

    def _raise_if_unreachable(self) -> None:
        session = self._session
        if session.state == S.UNINITIALIZED:
            raise SessionStateError(
                f"Session {session.id!r} is not initialized; call initialize() first"
            )
        if session.state == S.TERMINAL_DOWN:
            raise self._terminal_error()
        if session.fatal_error is not None:
            raise self._fatal_error_for_waiter(session.fatal_error)

    def _terminal_error(self) -> TerminalSessionError:
        reason = self._session.last_disconnect_reason
        return TerminalSessionError(
            f"Session {self._session.id!r} disconnected terminally "
            f"(reason: {reason}). Re-pair required: call repair().",
            reason=reason,
        )

    def _fatal_error_for_waiter(self, error: BaseException) -> SessionStateError:
        exc = SessionStateError(
            f"Session {self._session.id!r} halted automatic recovery: {error}. "
            "Fix the cause, then call clear_fatal_error() or repair()."
        )
        exc.__cause__ = error
        return exc

    def _timeout_message(self, elapsed: float) -> str:
        session = self._session
        if session.state == S.AWAITING_PAIRING:
            auth = "not authenticated (pairing challenge pending, scan it to continue)"
        elif session.authenticated:
            auth = "authenticated but not ready (still loading)"
        else:
            auth = "not authenticated"
        parts = [
            f"Timeout waiting for session {session.id!r} to become ready "
            f"after {elapsed:.1f}s.",
            f"Current state: {session.state.value}.",
            f"Authentication status: {auth}.",
        ]
        if session.last_error is not None:
            parts.append(f"Last error: {session.last_error}.")
        if session.last_disconnect_reason is not None:
            parts.append(f"Last disconnect reason: {session.last_disconnect_reason}.")
        parts.append(
            "Remediation: 1) complete the pairing challenge if one was issued, "
            "2) check network connectivity and firewall rules, "
            "3) make sure no other client is using the same account, "
            "4) re-pair (clear the stored credential) if the problem persists, "
            "5) increase the timeout."
        )
        return " ".join(parts)

    # -- Disconnects ----------------------------------------------------------

    def handle_disconnect(self, reason: Any) -> DisconnectCategory:
        """Classify *reason* and update state / schedule recovery."""
        session = self._session
        category = self._classifier.classify(reason)
        if session.state not in _DISCONNECTABLE:
            logger.debug(
                "[%s] Disconnect %r ignored in state %s",
                session.id,
                reason,
                session.state.value,
            )
            return category

        session.last_disconnect_reason = None if reason is None else str(reason)
        session.last_disconnect_at = time.time()
        session.authenticated = False

        # The transport an in-flight initialize was waiting on is gone
        self._supersede_init()

        if category == DisconnectCategory.TERMINAL:
            self._enter_terminal(reason)
            return category

        if category == DisconnectCategory.UNKNOWN:
            session.unknown_state_streak += 1
        if session.state == S.TRANSIENT_DOWN:
            # Supersede whatever retry was pending
            self._cancel_state_timers()
        else:
            self._transition(S.TRANSIENT_DOWN)
        logger.warning(
            "[%s] Disconnected (%s, %s)", session.id, reason, category.value
        )
        self._events.emit("disconnected", session, reason, category)
        self._schedule_reconnect()
        return category

    def _enter_terminal(self, reason: Any, error: BaseException | None = None) -> None:
        session = self._session
        session.last_disconnect_reason = None if reason is None else str(reason)
        session.last_disconnect_at = session.last_disconnect_at or time.time()
        session.authenticated = False
        if error is not None:
            session.last_error = error
        self._transition(S.TERMINAL_DOWN)
        logger.warning(
            "[%s] Terminal disconnect (%s); re-pair required", session.id, reason
        )
        self._events.emit(
            "disconnected", session, reason, DisconnectCategory.TERMINAL
        )

    def _schedule_reconnect(self) -> None:
        session = self._session
        if session.fatal_error is not None:
            return
        session.retry_attempt += 1
        if self._reconnect_backoff.exhausted(session.retry_attempt):
            error = TransientConnectivityError(
                f"Session {session.id!r} gave up after "
                f"{self._config.max_reconnect_attempts} reconnect attempts "
                f"(last reason: {session.last_disconnect_reason})"
            )
            self._set_fatal(error)
            return
        delay = self._reconnect_backoff.delay(session.retry_attempt)
        logger.info(
            "[%s] Reconnecting in %.1fs (attempt %d/%d)",
            session.id,
            delay,
            session.retry_attempt,
            self._config.max_reconnect_attempts,
        )
        self._call_later(delay, self._spawn_initialize, "reconnect")

    # -- Recovery -------------------------------------------------------------

    async def reinitialize(
        self,
        reason: str = "requested",
        *,
        clear_credentials: bool = False,
        force: bool = False,
    ) -> None:
        """Tear the transport down and initialize again.

        Without *force* this is a no-op for TERMINAL_DOWN sessions and for
        sessions with a fatal error, and it joins an initialize already in
        flight. With *force* an in-flight initialize is cancelled first.
        """
        self._ensure_not_destroyed()
        session = self._session
        if session.state == S.UNINITIALIZED:
            raise SessionStateError(
                f"Session {session.id!r} is not initialized; call initialize() first"
            )
        if not force:
            if session.fatal_error is not None:
                logger.warning(
                    "[%s] Reinitialize (%s) skipped: fatal error set", session.id, reason
                )
                return
            if session.state == S.TERMINAL_DOWN:
                logger.info(
                    "[%s] Reinitialize (%s) skipped: re-pair required", session.id, reason
                )
                return
            if self.init_in_flight:
                await self._await_init(self._init_task)
                return
        else:
            await self._cancel_init_task()

        logger.info(
            "[%s] Reinitializing (%s%s)",
            session.id,
            reason,
            ", clearing credential" if clear_credentials else "",
        )
        if clear_credentials:
            await self._store.clear(session.id)
        await self._start_initialize(reason)

    def schedule_reinitialize(
        self,
        reason: str = "requested",
        *,
        clear_credentials: bool = False,
        force: bool = False,
    ) -> asyncio.Task[Any]:
        """Run :meth:`reinitialize` in the background; failures are logged."""
        return self._fire_task(
            self.reinitialize(reason, clear_credentials=clear_credentials, force=force)
        )

    async def repair(self) -> None:
        """Clear the stored credential and start over with a fresh pairing.

        This is the explicit way out of TERMINAL_DOWN and also clears a
        fatal error.
        """
        self._ensure_not_destroyed()
        session = self._session
        logger.info("[%s] Re-pairing: clearing stored credential", session.id)
        await self._cancel_init_task()
        await self._teardown_transport()
        await self._store.clear(session.id)
        session.fatal_error = None
        session.retry_attempt = 0
        session.init_attempt = 0
        session.reinit_attempt = 0
        session.unknown_state_streak = 0
        session.auth_failure_count = 0
        if self._owns_dedup:
            self._dedup.start()
        await self._start_initialize("repair")

    def clear_fatal_error(self, *, resume: bool = True) -> None:
        """Re-enable automatic recovery after a fatal error.

        With *resume* a TRANSIENT_DOWN session starts reinitializing at once.
        """
        session = self._session
        if session.fatal_error is None:
            return
        logger.info("[%s] Fatal error cleared: %s", session.id, session.fatal_error)
        session.fatal_error = None
        session.retry_attempt = 0
        session.init_attempt = 0
        if resume and session.state == S.TRANSIENT_DOWN and not self._destroying:
            self.schedule_reinitialize("fatal error cleared")

    # -- Send -----------------------------------------------------------------

    async def send(self, destination: str, payload: Any, **options: Any) -> Any:
        """Queue one outbound message; returns the transport's result.

        Raises :class:`SessionNotReadyError` immediately unless READY.
        """
        self._ensure_not_destroyed()
        session = self._session
        if session.state != S.READY:
            raise SessionNotReadyError(
                f"Session {session.id!r} is not ready (state: {session.state.value})"
            )

        async def deliver() -> Any:
            transport = self._transport
            if session.state != S.READY or transport is None:
                raise SessionNotReadyError(
                    f"Session {session.id!r} left READY before the send ran "
                    f"(state: {session.state.value})"
                )
            return await transport.send(destination, payload, options)

        return await self._queue.schedule(deliver, destination=destination, payload=payload)

    # -- Destroy --------------------------------------------------------------

    async def destroy(self) -> None:
        """Stop everything and move to DESTROYED. Irreversible."""
        if self._session.state == S.DESTROYED or self._destroying:
            return
        self._destroying = True
        session = self._session
        logger.info("[%s] Destroying session", session.id)

        await self._monitor.stop()
        self._cancel_state_timers()
        await self._cancel_init_task()
        current = asyncio.current_task()
        pending = [t for t in self._background_tasks if t is not current]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        await self._queue.close()
        if self._owns_dedup:
            await self._dedup.stop()
        await self._teardown_transport()
        session.connecting_since = None
        self._transition(S.DESTROYED)
        await self._events.drain()

    # -- Diagnostics ----------------------------------------------------------

    def diagnostics(self) -> dict[str, Any]:
        return {
            **self._session.snapshot(),
            "transport_attached": self._transport is not None,
            "init_in_flight": self.init_in_flight,
            "pending_timers": self.pending_timers,
            "queue": self._queue.counts(),
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            **self.diagnostics(),
            "messages_delivered": self._messages_delivered,
            "duplicates_dropped": self._duplicates_dropped,
            "dispatch": self._queue.get_stats(),
            "monitor": self._monitor.get_stats(),
        }
