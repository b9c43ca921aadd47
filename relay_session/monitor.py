# =============================================================================
# Relay Session -- Readiness Monitor
# =============================================================================
#
# Two loops per session, started and stopped from the controller's
# state_changed events:
#
#   fallback poller  -- while AUTHENTICATING, infer READY from the transport's
#                       own state when the "ready" event never arrives
#   health loop      -- while the session is alive, detect stuck sessions and
#                       escalate: re-check -> reinitialize -> cooldown
#
# The monitor never changes state directly; it asks the controller.
# =============================================================================

from __future__ import annotations

import asyncio
import random
import time
from typing import TYPE_CHECKING, Any

from ._logging import logger
from .constants import AUTH_FAILURES_BEFORE_CLEAR
from .types import HealthVerdict, Session, SessionConfig, SessionState, TransportState

if TYPE_CHECKING:
    from .controller import SessionController

_HEALTH_INACTIVE = frozenset(
    {SessionState.UNINITIALIZED, SessionState.TERMINAL_DOWN, SessionState.DESTROYED}
)


class ReadinessMonitor:
    """Fallback readiness poller and health escalation for one controller.

    Args:
        controller: The session's controller.
        config: Intervals and escalation limits.
        rng: Random source for the state re-check delay.
    """

    def __init__(
        self,
        controller: SessionController,
        config: SessionConfig,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._controller = controller
        self._config = config
        self._rng = rng or random.Random()
        self._poll_task: asyncio.Task[None] | None = None
        self._health_task: asyncio.Task[None] | None = None
        self._cooldown_until: float | None = None
        self._in_flight_warned = False
        self._stopped = False

        self._checks = 0
        self._escalations = 0
        self._forced_reinits = 0
        self._cooldowns = 0
        self._inferred_ready = 0
        self._last_verdict: HealthVerdict | None = None

        controller.on("state_changed", self._on_state_changed)

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def health_running(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    @property
    def in_cooldown(self) -> bool:
        return self._cooldown_until is not None and time.monotonic() < self._cooldown_until

    # -- Loop management ------------------------------------------------------

    def _on_state_changed(self, session: Session, old: SessionState, new: SessionState) -> None:
        if self._stopped:
            return
        if new == SessionState.AUTHENTICATING:
            self._start_poller()
        else:
            self._stop_poller()

        if new in _HEALTH_INACTIVE:
            self._stop_health()
        elif self._config.health_check_enabled:
            self._start_health()

    def _start_poller(self) -> None:
        if self.polling:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    def _stop_poller(self) -> None:
        task = self._poll_task
        self._poll_task = None
        # The poller stops itself when its own inference changed the state
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def _start_health(self) -> None:
        if self.health_running:
            return
        self._health_task = asyncio.get_running_loop().create_task(self._health_loop())

    def _stop_health(self) -> None:
        task = self._health_task
        self._health_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def stop(self) -> None:
        """Stop both loops and unsubscribe from the controller."""
        self._stopped = True
        self._controller.off("state_changed", self._on_state_changed)
        tasks = [t for t in (self._poll_task, self._health_task) if t is not None]
        self._poll_task = None
        self._health_task = None
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        tasks = [t for t in tasks if t is not current]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # -- Fallback poller ------------------------------------------------------

    async def _poll_loop(self) -> None:
        session = self._controller.session
        interval = self._config.fallback_poll_interval
        while session.state == SessionState.AUTHENTICATING:
            await asyncio.sleep(interval)
            if session.state != SessionState.AUTHENTICATING:
                break
            if await self._controller.infer_ready("fallback poller"):
                self._inferred_ready += 1
                break

    # -- Health loop ----------------------------------------------------------

    async def _health_loop(self) -> None:
        interval = self._config.health_check_interval
        while True:
            await asyncio.sleep(interval)
            try:
                await self.check_health()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(
                    "[%s] Health check failed: %s",
                    self._controller.session_id,
                    exc,
                    exc_info=True,
                )

    async def check_health(self) -> HealthVerdict:
        """Run one health check, including any re-checks and escalation."""
        self._checks += 1
        verdict = await self._check_health()
        self._last_verdict = verdict
        return verdict

    def _should_skip(self, session: Session) -> bool:
        return session.state in _HEALTH_INACTIVE or session.fatal_error is not None

    async def _check_health(self) -> HealthVerdict:
        controller = self._controller
        session = controller.session
        cfg = self._config

        if self._should_skip(session):
            return HealthVerdict.SKIPPED

        if self._cooldown_until is not None:
            if time.monotonic() < self._cooldown_until:
                return HealthVerdict.COOLDOWN
            logger.info("[%s] Escalation cooldown over, counters reset", session.id)
            self._cooldown_until = None
            session.reinit_attempt = 0
            session.unknown_state_streak = 0

        verdict = self._check_in_flight(session)
        if verdict is not None:
            return verdict

        if self._in_grace_window(session):
            return HealthVerdict.GRACE

        while True:
            state = await controller.query_transport_state()
            if self._should_skip(session):
                return HealthVerdict.SKIPPED
            if state == TransportState.CONNECTED:
                if session.reinit_attempt or session.unknown_state_streak:
                    logger.info("[%s] Health check: connected, counters reset", session.id)
                session.reinit_attempt = 0
                session.unknown_state_streak = 0
                return HealthVerdict.HEALTHY

            session.unknown_state_streak += 1
            if session.unknown_state_streak >= cfg.max_state_retries:
                break
            delay = self._rng.uniform(*cfg.state_retry_delay)
            logger.warning(
                "[%s] Health check: transport %s (%d/%d), re-checking in %.0fs",
                session.id,
                state.value,
                session.unknown_state_streak,
                cfg.max_state_retries,
                delay,
            )
            await asyncio.sleep(delay)
            if self._should_skip(session):
                return HealthVerdict.SKIPPED
            verdict = self._check_in_flight(session)
            if verdict is not None:
                return verdict

        if self._in_grace_window(session):
            return HealthVerdict.GRACE
        if controller.pending_timers:
            # A reconnect, init retry or pairing timeout will act first
            logger.info(
                "[%s] Health check: transport %s, recovery already scheduled",
                session.id,
                state.value,
            )
            return HealthVerdict.DEGRADED
        return self._escalate(session)

    def _check_in_flight(self, session: Session) -> HealthVerdict | None:
        if not self._controller.init_in_flight or session.connecting_since is None:
            self._in_flight_warned = False
            return None
        elapsed = time.monotonic() - session.connecting_since
        if elapsed >= self._config.in_flight_force_after:
            logger.error(
                "[%s] Initialize stuck for %.0fs, forcing reinitialize",
                session.id,
                elapsed,
            )
            self._forced_reinits += 1
            self._in_flight_warned = False
            session.unknown_state_streak = 0
            self._controller.schedule_reinitialize(
                "stuck initialize", clear_credentials=self._clear_credentials(session), force=True
            )
            return HealthVerdict.ESCALATED
        if elapsed >= self._config.in_flight_warn_after and not self._in_flight_warned:
            logger.warning(
                "[%s] Initialize in flight for %.0fs", session.id, elapsed
            )
            self._in_flight_warned = True
        return HealthVerdict.IN_FLIGHT

    def _in_grace_window(self, session: Session) -> bool:
        issued = session.last_pairing_issued_at
        if issued is None:
            return False
        if time.time() - issued < self._config.pairing_grace_period:
            logger.debug("[%s] Pairing challenge recent, escalation suppressed", session.id)
            return True
        return False

    def _clear_credentials(self, session: Session) -> bool:
        return (
            self._config.clear_credentials_on_reinit
            or session.auth_failure_count >= AUTH_FAILURES_BEFORE_CLEAR
        )

    def _escalate(self, session: Session) -> HealthVerdict:
        session.unknown_state_streak = 0
        if session.reinit_attempt < self._config.max_reinit_attempts:
            session.reinit_attempt += 1
            clear = self._clear_credentials(session)
            logger.warning(
                "[%s] Session unhealthy, reinitializing (%d/%d%s)",
                session.id,
                session.reinit_attempt,
                self._config.max_reinit_attempts,
                ", clearing credential" if clear else "",
            )
            self._escalations += 1
            self._controller.schedule_reinitialize(
                "health check escalation", clear_credentials=clear
            )
            return HealthVerdict.ESCALATED

        self._cooldown_until = time.monotonic() + self._config.escalation_cooldown
        self._cooldowns += 1
        logger.error(
            "[%s] Session still unhealthy after %d reinitializations, "
            "pausing automatic recovery for %.0fs",
            session.id,
            session.reinit_attempt,
            self._config.escalation_cooldown,
        )
        return HealthVerdict.COOLDOWN

    def get_stats(self) -> dict[str, Any]:
        return {
            "polling": self.polling,
            "health_running": self.health_running,
            "in_cooldown": self.in_cooldown,
            "checks": self._checks,
            "escalations": self._escalations,
            "forced_reinits": self._forced_reinits,
            "cooldowns": self._cooldowns,
            "inferred_ready": self._inferred_ready,
            "last_verdict": self._last_verdict.value if self._last_verdict else None,
        }
