# =============================================================================
# Relay Session -- Credential Stores
# =============================================================================
#
# A credential is whatever the transport reported on "authenticated": an
# opaque JSON-compatible mapping that lets the next connection resume
# without pairing.
# =============================================================================

from __future__ import annotations

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from ._logging import logger
from .constants import AUTH_DIR_NAME, AUTH_DIR_PARENT, CREDENTIAL_FILE_PREFIX
from .transport import Credential

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> bytes:
        return orjson.dumps(obj, option=orjson.OPT_INDENT_2)

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> bytes:
        return json.dumps(obj, indent=2).encode()


_SAFE_ID = re.compile(r"[^A-Za-z0-9._-]")


def default_auth_dir() -> Path:
    """``$RELAY_AUTH_DIR`` or ``~/.relay_session/auth``."""
    env = os.environ.get("RELAY_AUTH_DIR")
    if env:
        return Path(env).expanduser()
    return Path.home() / AUTH_DIR_PARENT / AUTH_DIR_NAME


class CredentialStore(ABC):
    """Persists one credential per session id."""

    @abstractmethod
    async def load(self, session_id: str) -> Credential | None: ...

    @abstractmethod
    async def save(self, session_id: str, credential: Credential) -> None: ...

    @abstractmethod
    async def clear(self, session_id: str) -> bool:
        """Remove the credential. Returns True if one existed."""


class MemoryCredentialStore(CredentialStore):
    """Process-local store, mainly for tests and ephemeral sessions."""

    def __init__(self, initial: dict[str, Credential] | None = None) -> None:
        self._data: dict[str, dict[str, Any]] = {
            k: dict(v) for k, v in (initial or {}).items()
        }

    async def load(self, session_id: str) -> Credential | None:
        data = self._data.get(session_id)
        return dict(data) if data is not None else None

    async def save(self, session_id: str, credential: Credential) -> None:
        self._data[session_id] = dict(credential)

    async def clear(self, session_id: str) -> bool:
        return self._data.pop(session_id, None) is not None

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._data


class FileCredentialStore(CredentialStore):
    """One JSON file per session under *root* (``session-<id>.json``).

    Writes go through a temp file + rename so a crash never leaves a
    half-written credential behind. A file that fails to parse is treated
    as missing and logged; the next successful pairing overwrites it.
    """

    def __init__(self, root: str | os.PathLike[str] | None = None) -> None:
        self._root = Path(root) if root is not None else default_auth_dir()

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, session_id: str) -> Path:
        safe = _SAFE_ID.sub("_", session_id)
        return self._root / f"{CREDENTIAL_FILE_PREFIX}{safe}.json"

    def list_sessions(self) -> list[str]:
        """Session ids (sanitised form) that have a stored credential."""
        if not self._root.is_dir():
            return []
        prefix_len = len(CREDENTIAL_FILE_PREFIX)
        return sorted(
            p.stem[prefix_len:]
            for p in self._root.glob(f"{CREDENTIAL_FILE_PREFIX}*.json")
        )

    async def load(self, session_id: str) -> Credential | None:
        return await asyncio.to_thread(self._load_sync, session_id)

    async def save(self, session_id: str, credential: Credential) -> None:
        await asyncio.to_thread(self._save_sync, session_id, credential)

    async def clear(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._clear_sync, session_id)

    def _load_sync(self, session_id: str) -> Credential | None:
        path = self.path_for(session_id)
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        try:
            data = _json_loads(raw)
        except ValueError as exc:
            logger.warning("Unreadable credential file %s: %s", path, exc)
            return None
        if not isinstance(data, dict):
            logger.warning("Credential file %s does not hold an object", path)
            return None
        return data

    def _save_sync(self, session_id: str, credential: Credential) -> None:
        path = self.path_for(session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(".json.tmp")
        tmp.write_bytes(_json_dumps(dict(credential)))
        os.replace(tmp, path)
        logger.debug("Saved credential for session %s to %s", session_id, path)

    def _clear_sync(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.info("Cleared stored credential for session %s", session_id)
        return True
