"""Shared fixtures: in-memory transport, fake clock, fast session config."""

import asyncio
import random
import time

import pytest

from relay_session.credentials import MemoryCredentialStore
from relay_session.transport import Transport
from relay_session.types import RateLimitConfig, SessionConfig


class FakeTransport(Transport):
    """Scriptable transport. Tests drive vendor events with ``fire()``."""

    def __init__(self, session_id, credential=None, *, init_error=None, init_delay=0.0,
                 init_events=(), state="UNKNOWN"):
        super().__init__()
        self.session_id = session_id
        self.credential = credential
        self.init_error = init_error
        self.init_delay = init_delay
        self.init_events = list(init_events)
        self.state = state
        self.state_error = None
        self.send_side_effect = None
        self.initialize_calls = 0
        self.state_queries = 0
        self.sent = []
        self.closed = False

    def fire(self, event, *args):
        return self._emit(event, *args)

    async def initialize(self):
        self.initialize_calls += 1
        if self.init_delay:
            await asyncio.sleep(self.init_delay)
        if self.init_error is not None:
            raise self.init_error
        for event, *args in self.init_events:
            self._emit(event, *args)

    async def get_connection_state(self):
        self.state_queries += 1
        if self.state_error is not None:
            raise self.state_error
        return self.state

    async def send(self, destination, payload, options=None):
        self.sent.append((destination, payload, dict(options or {})))
        if self.send_side_effect is not None:
            effect = self.send_side_effect
            if isinstance(effect, list):
                effect = effect.pop(0)
            if isinstance(effect, BaseException):
                raise effect
            return effect
        return {"id": f"sent-{len(self.sent)}", "to": destination}

    async def close(self):
        self.closed = True


class FakeTransportFactory:
    """Records every transport a controller builds.

    ``init_errors`` is consumed one entry per transport (None = success);
    ``defaults`` are passed to every FakeTransport.
    """

    def __init__(self, init_errors=(), **defaults):
        self.init_errors = list(init_errors)
        self.defaults = defaults
        self.transports = []
        self.credentials = []

    def __call__(self, session_id, credential):
        kwargs = dict(self.defaults)
        if self.init_errors:
            kwargs["init_error"] = self.init_errors.pop(0)
        transport = FakeTransport(session_id, credential, **kwargs)
        self.transports.append(transport)
        self.credentials.append(credential)
        return transport

    @property
    def last(self):
        return self.transports[-1]

    @property
    def count(self):
        return len(self.transports)


class FakeClock:
    """Monotonic clock advanced only by ``sleep`` / ``advance``."""

    def __init__(self, start=1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += max(0.0, delay)
        await asyncio.sleep(0)


def fast_config(**overrides):
    """Session config with every delay shrunk to milliseconds."""
    config = SessionConfig(
        ready_timeout=1.0,
        pairing_timeout=1.0,
        init_retry_base_delay=0.01,
        reconnect_base_delay=0.01,
        backoff_cap=0.05,
        health_check_interval=0,
        fallback_poll_interval=0.05,
        state_retry_delay=(0.0, 0.0),
        escalation_cooldown=0.05,
        pairing_grace_period=0.0,
        dedup_sweep_interval=0,
        rate_limit=RateLimitConfig(capacity=100, window=1.0, min_spacing=0.0),
        send_retry_delay=0.01,
    )
    return config.with_overrides(**overrides)


async def wait_until(predicate, timeout=1.0, interval=0.005):
    """Poll *predicate* until true; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met within %.2fs" % timeout)
        await asyncio.sleep(interval)


@pytest.fixture
def factory():
    return FakeTransportFactory()


@pytest.fixture
def store():
    return MemoryCredentialStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def rng():
    return random.Random(1234)
