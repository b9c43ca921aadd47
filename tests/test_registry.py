"""Tests for the multi-session registry."""

import asyncio
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

from conftest import FakeTransportFactory, fast_config
from relay_session.dedup import DeduplicationCache
from relay_session.errors import (
    ReadyTimeoutError,
    SessionExistsError,
    SessionNotFoundError,
    SessionStateError,
)
from relay_session.registry import SessionRegistry
from relay_session.types import SessionState


@pytest.fixture
def ready_factory():
    return FakeTransportFactory(init_events=[("ready",)])


@pytest_asyncio.fixture
async def registry(store, ready_factory):
    reg = SessionRegistry(ready_factory, config=fast_config(), credential_store=store)
    yield reg
    await reg.close()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_and_get(self, registry):
        controller = await registry.create_session("ops")
        assert registry.get("ops") is controller
        assert "ops" in registry
        assert len(registry) == 1
        assert registry.ids() == ["ops"]
        assert controller.state == SessionState.UNINITIALIZED

    @pytest.mark.asyncio
    async def test_ids_are_case_sensitive(self, registry):
        await registry.create_session("Ops")
        await registry.create_session("ops")
        assert sorted(registry.ids()) == ["Ops", "ops"]

    @pytest.mark.asyncio
    async def test_duplicate_id(self, registry):
        await registry.create_session("ops")
        with pytest.raises(SessionExistsError):
            await registry.create_session("ops")

    @pytest.mark.asyncio
    async def test_unknown_id(self, registry):
        with pytest.raises(SessionNotFoundError):
            registry.get("nope")
        with pytest.raises(SessionNotFoundError):
            await registry.destroy_session("nope")

    @pytest.mark.asyncio
    async def test_no_factory(self, store):
        reg = SessionRegistry(credential_store=store, config=fast_config())
        with pytest.raises(ValueError):
            await reg.create_session("ops")
        await reg.close()

    @pytest.mark.asyncio
    async def test_per_session_factory(self, store):
        factory = FakeTransportFactory()
        reg = SessionRegistry(credential_store=store, config=fast_config())
        await reg.create_session("ops", transport_factory=factory)
        await reg.initialize("ops")
        assert factory.count == 1
        await reg.close()

    @pytest.mark.asyncio
    async def test_destroy_session(self, registry):
        controller = await registry.create_session("ops")
        await registry.initialize("ops")
        await registry.destroy_session("ops")
        assert "ops" not in registry
        assert controller.state == SessionState.DESTROYED
        # The id can be reused
        await registry.create_session("ops")

    @pytest.mark.asyncio
    async def test_close_destroys_everything(self, store):
        factory = FakeTransportFactory(init_events=[("ready",)])
        async with SessionRegistry(factory, config=fast_config(), credential_store=store) as reg:
            a = await reg.create_session("a")
            b = await reg.create_session("b")
            await reg.initialize("a")
        assert a.state == SessionState.DESTROYED
        assert b.state == SessionState.DESTROYED
        assert len(reg) == 0
        with pytest.raises(SessionStateError):
            await reg.create_session("c")


class TestOperations:
    @pytest.mark.asyncio
    async def test_initialize_wait_and_send(self, registry, ready_factory):
        await registry.create_session("ops")
        await registry.initialize("ops")
        await registry.wait_until_ready("ops", timeout=0.5)
        result = await registry.send("ops", "123@c.us", "hello")
        assert result["to"] == "123@c.us"
        assert ready_factory.last.sent == [("123@c.us", "hello", {})]

    @pytest.mark.asyncio
    async def test_wait_for_all_ready(self, store):
        factory = FakeTransportFactory()
        reg = SessionRegistry(factory, config=fast_config(), credential_store=store)
        await reg.create_session("a")
        await reg.create_session("b")
        await reg.initialize("a")
        await reg.initialize("b")
        factory.transports[0].fire("ready")

        outcome = await reg.wait_for_all_ready(timeout=0.05)
        assert outcome["a"] is None
        assert isinstance(outcome["b"], ReadyTimeoutError)
        await reg.close()


class TestSharedDedup:
    @pytest.mark.asyncio
    async def test_message_handler_receives_all_sessions(self, registry):
        received = []

        @registry.on_message
        def handler(session, event):
            received.append((session.id, event["id"]))

        await registry.create_session("a")
        await registry.create_session("b")
        await registry.initialize("a")
        await registry.initialize("b")
        registry.get("a").transport.fire("message", {"id": "m1"})
        registry.get("b").transport.fire("message", {"id": "m1"})
        registry.get("a").transport.fire("message", {"id": "m1"})
        assert received == [("a", "m1"), ("b", "m1")]

    @pytest.mark.asyncio
    async def test_handler_added_before_and_removed(self, registry):
        handler = MagicMock()
        await registry.create_session("a")
        registry.on_message(handler)
        await registry.initialize("a")
        registry.get("a").transport.fire("message", {"id": "m1"})
        registry.off_message(handler)
        registry.get("a").transport.fire("message", {"id": "m2"})
        handler.assert_called_once()

    @pytest.mark.asyncio
    async def test_shared_cache_passed_in(self, store):
        dedup = DeduplicationCache(sweep_interval=0)
        factory = FakeTransportFactory(init_events=[("ready",)])
        reg = SessionRegistry(factory, config=fast_config(), credential_store=store, dedup=dedup)
        await reg.create_session("a")
        await reg.initialize("a")
        reg.get("a").transport.fire("message", {"id": "m1"})
        assert "a:m1" in dedup
        await reg.close()

    @pytest.mark.asyncio
    async def test_stats(self, registry):
        await registry.create_session("a")
        stats = registry.get_stats()
        assert stats["session_count"] == 1
        assert "a" in stats["sessions"]
        assert stats["dedup"]["size"] == 0

    @pytest.mark.asyncio
    async def test_async_message_handler(self, registry):
        seen = asyncio.Event()

        async def handler(session, event):
            seen.set()

        registry.on_message(handler)
        await registry.create_session("a")
        await registry.initialize("a")
        registry.get("a").transport.fire("message", {"id": "m1"})
        await asyncio.wait_for(seen.wait(), 1.0)
