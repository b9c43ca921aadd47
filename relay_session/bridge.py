# =============================================================================
# Relay Session -- Bridge Transport
# =============================================================================
#
# Transport that talks to an out-of-process messaging bridge (the process
# actually driving the vendor client) over a WebSocket.
#
# Frames are JSON text:
#
#     {"type": "<kind>", "payload": {...}, "requestId": "<id or null>"}
#
# Inbound:  qr, authenticated, auth_failure, ready, disconnected, message,
#           response (answers a request; payload {"ok": bool, ...})
# Outbound: init, get_state, send_text, close
# =============================================================================

from __future__ import annotations

import asyncio
import json
from typing import Any, Mapping
from uuid import uuid4

import websockets
import websockets.asyncio.client
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from ._logging import logger
from .constants import (
    BRIDGE_CONNECT_TIMEOUT,
    BRIDGE_MAX_MESSAGE_SIZE,
    BRIDGE_PROTOCOL_VERSION,
    BRIDGE_REQUEST_TIMEOUT,
)
from .errors import (
    FatalDependencyError,
    RateLimitExceededError,
    RelaySessionError,
    TerminalSessionError,
    TransientConnectivityError,
)
from .transport import Credential, Transport, TransportFactory

try:
    import orjson

    def _json_loads(data: str | bytes) -> Any:
        return orjson.loads(data)

    def _json_dumps(obj: Any) -> str:
        return orjson.dumps(obj).decode()

except ImportError:

    def _json_loads(data: str | bytes) -> Any:
        return json.loads(data)

    def _json_dumps(obj: Any) -> str:
        return json.dumps(obj, separators=(",", ":"))


_TERMINAL_CODES = frozenset(
    {"TERMINAL", "AUTH_FAILURE", "LOGGED_OUT", "UNPAIRED", "CREDENTIAL_REVOKED"}
)


def error_from_payload(payload: Mapping[str, Any]) -> RelaySessionError:
    """Map a failed ``response`` payload onto the error hierarchy."""
    error = payload.get("error") or {}
    if isinstance(error, str):
        error = {"message": error}
    code = str(error.get("code") or "").upper()
    message = error.get("message") or code or "Bridge request failed"

    if code == "RATE_LIMITED":
        retry_after = float(error.get("retryAfterMs") or 0) / 1000.0
        return RateLimitExceededError(retry_after, message)
    if code in _TERMINAL_CODES or code.startswith("TERMINAL_"):
        return TerminalSessionError(message, reason=code)
    if code == "FATAL_DEPENDENCY":
        return FatalDependencyError(message)
    return TransientConnectivityError(message)


class BridgeTransport(Transport):
    """WebSocket client for a JSON messaging bridge.

    Args:
        url: Bridge endpoint, e.g. ``ws://127.0.0.1:8765/session``.
        session_id: Sent with ``init`` so one bridge can host many sessions.
        credential: Stored credential to resume with, or None to pair.
        connect_timeout: Seconds allowed for the WebSocket handshake.
        request_timeout: Seconds allowed for a request's response.
        extra_headers: Additional handshake headers (e.g. an API key).
    """

    def __init__(
        self,
        url: str,
        session_id: str,
        credential: Credential | None = None,
        *,
        connect_timeout: float = BRIDGE_CONNECT_TIMEOUT,
        request_timeout: float = BRIDGE_REQUEST_TIMEOUT,
        max_size: int = BRIDGE_MAX_MESSAGE_SIZE,
        extra_headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__()
        self._url = url
        self._session_id = session_id
        self._credential = dict(credential) if credential else None
        self._connect_timeout = connect_timeout
        self._request_timeout = request_timeout
        self._max_size = max_size
        self._extra_headers = extra_headers or {}

        self._ws_cm: Any | None = None
        self._ws: websockets.asyncio.client.ClientConnection | None = None
        self._recv_task: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[Any]] = {}
        self._closing = False
        self._closed = False

    @classmethod
    def factory(cls, url: str, **kwargs: Any) -> TransportFactory:
        """Build a ``transport_factory`` for controllers and registries."""

        def build(session_id: str, credential: Credential | None) -> BridgeTransport:
            return cls(url, session_id, credential, **kwargs)

        return build

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._closed

    # -- Transport API --------------------------------------------------------

    async def initialize(self) -> None:
        if self._closed:
            raise TransientConnectivityError("Bridge transport already closed")
        await self._connect()
        await self._request(
            "init",
            {
                "sessionId": self._session_id,
                "credential": self._credential,
                "protocolVersion": BRIDGE_PROTOCOL_VERSION,
            },
        )
        logger.debug("[%s] Bridge session initialized", self._session_id)

    async def get_connection_state(self) -> Any:
        if not self.connected:
            return "DISCONNECTED"
        result = await self._request("get_state", {"sessionId": self._session_id})
        if isinstance(result, Mapping):
            return result.get("state")
        return result

    async def send(
        self, destination: str, payload: Any, options: Mapping[str, Any] | None = None
    ) -> Any:
        if not self.connected:
            raise TransientConnectivityError("Bridge transport is not connected")
        return await self._request(
            "send_text",
            {
                "sessionId": self._session_id,
                "to": destination,
                "content": payload,
                "options": dict(options or {}),
            },
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closing = True
        self._closed = True

        if self._ws is not None:
            try:
                await self._ws.send(_json_dumps(self._frame("close", {})))
            except ConnectionClosed:
                pass

        if self._recv_task is not None:
            self._recv_task.cancel()
            await asyncio.gather(self._recv_task, return_exceptions=True)
            self._recv_task = None

        self._fail_pending(TransientConnectivityError("Bridge transport closed"))

        cm = self._ws_cm
        self._ws_cm = None
        self._ws = None
        if cm is not None:
            try:
                await cm.__aexit__(None, None, None)
            except Exception as exc:
                logger.debug("Error closing bridge socket: %s", exc)

    # -- Internal: connection -------------------------------------------------

    async def _connect(self) -> None:
        try:
            self._ws_cm = websockets.asyncio.client.connect(
                self._url,
                additional_headers=self._extra_headers,
                max_size=self._max_size,
                open_timeout=None,  # asyncio.wait_for handles timeout
            )
            self._ws = await asyncio.wait_for(
                self._ws_cm.__aenter__(), timeout=self._connect_timeout
            )
        except TimeoutError:
            self._ws_cm = None
            raise TransientConnectivityError(
                f"Bridge connection timed out after {self._connect_timeout}s"
            ) from None
        except InvalidURI as exc:
            self._ws_cm = None
            raise FatalDependencyError(f"Invalid bridge URL {self._url!r}") from exc
        except (OSError, InvalidHandshake) as exc:
            self._ws_cm = None
            raise TransientConnectivityError(f"Failed to connect to bridge: {exc}") from exc

        self._recv_task = asyncio.create_task(self._recv_loop())

    async def _recv_loop(self) -> None:
        ws = self._ws
        assert ws is not None
        reason = None
        try:
            async for raw in ws:
                self._handle_frame(raw)
        except ConnectionClosed as exc:
            if exc.rcvd is not None:
                reason = exc.rcvd.reason
        except asyncio.CancelledError:
            return
        # A clean close ends the iteration without raising
        reason = reason or ws.close_reason or "CONNECTION_CLOSED"

        self._fail_pending(TransientConnectivityError("Bridge connection closed"))
        if not self._closing:
            self._ws = None
            logger.debug("[%s] Bridge connection lost: %s", self._session_id, reason)
            self._emit("disconnected", reason)

    def _handle_frame(self, raw: str | bytes) -> None:
        try:
            frame = _json_loads(raw)
        except ValueError:
            logger.warning("[%s] Undecodable bridge frame dropped", self._session_id)
            return
        if not isinstance(frame, dict):
            logger.warning("[%s] Bridge frame is not an object", self._session_id)
            return

        kind = frame.get("type")
        payload = frame.get("payload") or {}

        if kind == "response":
            self._resolve(frame.get("requestId"), payload)
        elif kind == "qr":
            self._emit("pairing_challenge", payload.get("qr", payload))
        elif kind == "authenticated":
            self._emit("authenticated", payload.get("credential"))
        elif kind == "auth_failure":
            self._emit("auth_failure", payload.get("error"))
        elif kind == "ready":
            self._emit("ready")
        elif kind == "disconnected":
            self._emit("disconnected", payload.get("reason"))
        elif kind == "message":
            self._emit("message", payload)
        else:
            logger.debug("[%s] Unhandled bridge frame type %r", self._session_id, kind)

    # -- Internal: requests ---------------------------------------------------

    def _frame(self, kind: str, payload: Mapping[str, Any], request_id: str | None = None) -> dict:
        return {"type": kind, "payload": dict(payload), "requestId": request_id}

    async def _request(self, kind: str, payload: Mapping[str, Any]) -> Any:
        if self._ws is None:
            raise TransientConnectivityError("Bridge transport is not connected")
        request_id = uuid4().hex
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            try:
                await self._ws.send(_json_dumps(self._frame(kind, payload, request_id)))
            except ConnectionClosed as exc:
                raise TransientConnectivityError(f"Bridge connection closed: {exc}") from exc
            try:
                return await asyncio.wait_for(future, self._request_timeout)
            except TimeoutError:
                raise TransientConnectivityError(
                    f"Bridge request {kind!r} timed out after {self._request_timeout}s"
                ) from None
        finally:
            self._pending.pop(request_id, None)

    def _resolve(self, request_id: Any, payload: Mapping[str, Any]) -> None:
        future = self._pending.get(request_id) if request_id else None
        if future is None or future.done():
            logger.debug("[%s] Response for unknown request %r", self._session_id, request_id)
            return
        if payload.get("ok", True):
            future.set_result(payload.get("result"))
        else:
            future.set_exception(error_from_payload(payload))

    def _fail_pending(self, error: BaseException) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)
