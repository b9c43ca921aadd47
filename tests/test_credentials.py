"""Tests for credential stores."""

import logging

import pytest

from relay_session.credentials import (
    FileCredentialStore,
    MemoryCredentialStore,
    default_auth_dir,
)


class TestMemoryCredentialStore:
    @pytest.mark.asyncio
    async def test_round_trip(self):
        store = MemoryCredentialStore()
        assert await store.load("s1") is None
        await store.save("s1", {"token": "t"})
        assert await store.load("s1") == {"token": "t"}
        assert await store.clear("s1") is True
        assert await store.clear("s1") is False

    @pytest.mark.asyncio
    async def test_returns_copies(self):
        store = MemoryCredentialStore({"s1": {"token": "t"}})
        loaded = await store.load("s1")
        loaded["token"] = "changed"
        assert await store.load("s1") == {"token": "t"}


class TestFileCredentialStore:
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        store = FileCredentialStore(tmp_path / "auth")
        await store.save("ops", {"token": "abc", "device": 2})
        assert store.path_for("ops").name == "session-ops.json"
        assert await store.load("ops") == {"token": "abc", "device": 2}
        assert store.list_sessions() == ["ops"]
        assert not list((tmp_path / "auth").glob("*.tmp"))

    @pytest.mark.asyncio
    async def test_missing(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        assert await store.load("ops") is None
        assert await store.clear("ops") is False
        assert FileCredentialStore(tmp_path / "absent").list_sessions() == []

    @pytest.mark.asyncio
    async def test_clear(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        await store.save("ops", {"token": "abc"})
        assert await store.clear("ops") is True
        assert not store.path_for("ops").exists()

    @pytest.mark.asyncio
    async def test_unsafe_ids_sanitised(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        path = store.path_for("../etc/passwd")
        assert path.parent == tmp_path
        await store.save("../etc/passwd", {"token": "x"})
        assert await store.load("../etc/passwd") == {"token": "x"}

    @pytest.mark.asyncio
    async def test_corrupt_file_treated_as_missing(self, tmp_path, caplog):
        store = FileCredentialStore(tmp_path)
        store.path_for("ops").write_text("{not json")
        with caplog.at_level(logging.WARNING, logger="relay_session"):
            assert await store.load("ops") is None
        assert "Unreadable credential file" in caplog.text

    @pytest.mark.asyncio
    async def test_non_object_file(self, tmp_path):
        store = FileCredentialStore(tmp_path)
        store.path_for("ops").write_text("[1, 2]")
        assert await store.load("ops") is None


class TestDefaultAuthDir:
    def test_env_override(self, monkeypatch, tmp_path):
        monkeypatch.setenv("RELAY_AUTH_DIR", str(tmp_path))
        assert default_auth_dir() == tmp_path
        assert FileCredentialStore().root == tmp_path

    def test_home_default(self, monkeypatch):
        monkeypatch.delenv("RELAY_AUTH_DIR", raising=False)
        path = default_auth_dir()
        assert path.parts[-2:] == (".relay_session", "auth")
