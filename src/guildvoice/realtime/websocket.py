"""Shared WebSocket plumbing for provider protocol clients."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from abc import abstractmethod
from datetime import UTC, datetime
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import websockets
from websockets.exceptions import ConnectionClosed as SocketClosed
from websockets.exceptions import WebSocketException

from guildvoice.errors import ProviderConnectError, ProviderNotConnectedError
from guildvoice.models.enums import ResponseStatus
from guildvoice.realtime.events import ConnectionClosed, ResponseDone
from guildvoice.realtime.provider import ProviderProtocolClient

logger = logging.getLogger("guildvoice.realtime.websocket")

DEFAULT_CONNECT_TIMEOUT = 10.0

_SENSITIVE_HEADERS = frozenset({"authorization", "xi-api-key", "api-key", "x-api-key", "cookie"})


def redact_headers(headers: dict[str, str] | None) -> dict[str, str]:
    """Copy *headers* with credentials masked."""
    redacted: dict[str, str] = {}
    for key, value in (headers or {}).items():
        lowered = key.lower()
        if lowered in _SENSITIVE_HEADERS or "token" in lowered or "secret" in lowered:
            redacted[key] = "[redacted]"
        else:
            redacted[key] = value
    return redacted


def redact_url(url: str) -> str:
    """Mask query-string values (signed URLs carry credentials there)."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return "[unparseable url]"
    if not parts.query:
        return url
    query = urlencode([(key, "[redacted]") for key, _ in parse_qsl(parts.query)])
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, ""))


class WebSocketProtocolClient(ProviderProtocolClient):
    """Provider client speaking JSON messages over one persistent WebSocket.

    Subclasses implement :meth:`_handle_server_event` and call
    :meth:`_mark_established` once the provider acknowledges the session.
    An unrequested socket close after that point sets ``connected=False``,
    records the close code, and emits ``connection_closed``. The client
    never reconnects on its own.
    """

    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT

    def __init__(self) -> None:
        super().__init__()
        self._ws: Any = None
        self._receive_task: asyncio.Task[None] | None = None
        self._closing = False
        self._established = False

    async def _open_socket(self, url: str, headers: dict[str, str] | None = None) -> None:
        self._closing = False
        self._established = False
        try:
            async with asyncio.timeout(self.connect_timeout):
                ws = await websockets.connect(url, additional_headers=headers or None)
        except (TimeoutError, OSError, WebSocketException) as exc:
            status = getattr(getattr(exc, "response", None), "status_code", None)
            raise ProviderConnectError(
                f"{self.name} websocket connect failed: {type(exc).__name__}",
                provider=self.name,
                status_code=status,
                diagnostics={"url": redact_url(url), "headers": redact_headers(headers)},
            ) from exc

        self._ws = ws
        self._pending_input_audio.clear()
        self._clear_active_response()
        self.state.connected = True
        self.state.connected_at = datetime.now(UTC)
        self.state.last_error = None
        self.state.last_close_code = None
        self.state.last_close_reason = None
        self._receive_task = asyncio.create_task(
            self._receive_loop(ws),
            name=f"{self.name}_recv",
        )
        logger.debug("%s socket open: %s", self.name, redact_url(url))

    def _mark_established(self) -> None:
        self._established = True

    async def send_event(self, payload: dict[str, Any]) -> None:
        """Serialize and send one message, recording a redacted summary."""
        self._require_connected()
        ws = self._ws
        if ws is None:
            raise ProviderNotConnectedError(f"{self.name} socket is not open")
        try:
            await ws.send(json.dumps(payload))
        except SocketClosed as exc:
            raise ProviderNotConnectedError(f"{self.name} socket is not open") from exc
        self._record_outbound(payload)

    async def close(self) -> None:
        self._closing = True
        task = self._receive_task
        self._receive_task = None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

        ws = self._ws
        self._ws = None
        if ws is not None:
            with contextlib.suppress(Exception):
                await ws.close()

        self.state.connected = False
        self._established = False
        self._pending_input_audio.clear()
        self._clear_active_response()
        logger.debug("%s closed", self.name)

    # -- Receive loop --

    async def _receive_loop(self, ws: Any) -> None:
        try:
            async for raw_message in ws:
                try:
                    event = json.loads(raw_message)
                except (json.JSONDecodeError, UnicodeDecodeError):
                    logger.warning("Invalid JSON from %s, dropped", self.name)
                    continue
                if not isinstance(event, dict):
                    logger.warning("Non-object message from %s, dropped", self.name)
                    continue
                try:
                    await self._handle_server_event(event)
                except Exception:
                    logger.exception("Error handling %s event", self.name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not self._closing:
                logger.warning("%s websocket error: %s", self.name, exc)

        if not self._closing:
            self._handle_socket_close(
                getattr(ws, "close_code", None), str(getattr(ws, "close_reason", "") or "")
            )

    def _handle_socket_close(self, code: int | None, reason: str) -> None:
        if not self.state.connected:
            return
        self.state.connected = False
        self.state.last_close_code = code
        self.state.last_close_reason = reason or None
        self._ws = None
        self._pending_input_audio.clear()
        logger.warning("%s socket closed: code=%s reason=%s", self.name, code, reason or "-")
        self._on_socket_closed()

        if not self._established:
            return
        self._established = False
        response_id = self.state.active_response_id
        if response_id is not None:
            self._clear_active_response()
            self._emit(ResponseDone(status=ResponseStatus.INTERRUPTED, response_id=response_id))
        self._emit(ConnectionClosed(code=code, reason=reason))

    def _on_socket_closed(self) -> None:
        """Hook for subclasses waiting on a handshake."""

    @abstractmethod
    async def _handle_server_event(self, event: dict[str, Any]) -> None:
        """Map one decoded provider message to normalized events."""
        ...
