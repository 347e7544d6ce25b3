"""WebSocket transports for agentrelay.

Two legs, two libraries:

* The agent leg is an outbound client connection made with ``websockets``.
* The call leg is an inbound connection accepted by the ``aiohttp`` server,
  so that the Twilio webhooks and the Media Stream WebSocket share one port.

:class:`CallLegListener` is the demultiplexer in front of the call leg: it
only lets upgrade requests for the configured media-stream path through.
"""

from __future__ import annotations

from typing import Any, Awaitable, Callable

import aiohttp
import websockets
import websockets.asyncio.client
from aiohttp import web
from loguru import logger
from websockets.protocol import State

from agentrelay.errors import AgentConnectFailure, PeerClosed, TransportError
from agentrelay.transports.base import BaseTransport

# 16MB, large enough for any audio frame either peer sends
MAX_MESSAGE_SIZE = 16 * 1024 * 1024


class AgentWebSocketTransport(BaseTransport):
    """WebSocket client transport for the agent leg.

    Keepalive pings are driven by the session heartbeat, so the library's
    own ping loop is disabled.
    """

    def __init__(self, url: str | None = None, headers: dict[str, str] | None = None, **ws_kwargs: Any) -> None:
        self._url = url
        self._headers = headers or {}
        self._ws: Any | None = None
        self._ws_kwargs = ws_kwargs

    async def connect(self, **kwargs) -> None:
        url = kwargs.get("url", self._url)
        if not url:
            raise ValueError("WebSocket URL is required")
        self._url = url
        logger.info(f"Connecting to agent WebSocket: {_redact(url)}")
        try:
            self._ws = await websockets.asyncio.client.connect(
                url,
                additional_headers=self._headers or None,
                ping_interval=None,
                max_size=MAX_MESSAGE_SIZE,
                **self._ws_kwargs,
            )
        except (websockets.exceptions.WebSocketException, OSError) as e:
            raise AgentConnectFailure(f"Could not open agent WebSocket: {e}") from e
        logger.info("Connected to agent WebSocket")

    async def send(self, data: bytes | str) -> None:
        if not self._ws:
            raise PeerClosed("Agent WebSocket is not connected")
        try:
            await self._ws.send(data)
        except websockets.exceptions.ConnectionClosedOK as e:
            raise PeerClosed(f"Agent closed the connection: {e}", code=_close_code(e)) from e
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Agent connection failed: {e}") from e

    async def recv(self) -> bytes | str:
        if not self._ws:
            raise PeerClosed("Agent WebSocket is not connected")
        try:
            return await self._ws.recv()
        except websockets.exceptions.ConnectionClosedOK as e:
            raise PeerClosed(f"Agent closed the connection: {e}", code=_close_code(e)) from e
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Agent connection failed: {e}") from e

    async def ping(self) -> None:
        if not self._ws:
            raise PeerClosed("Agent WebSocket is not connected")
        try:
            await self._ws.ping()
        except websockets.exceptions.ConnectionClosed as e:
            raise TransportError(f"Agent ping failed: {e}") from e

    async def disconnect(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
            logger.info("Agent WebSocket disconnected")

    def is_connected(self) -> bool:
        return self._ws is not None and self._ws.state is State.OPEN


class CallLegSocket(BaseTransport):
    """Transport wrapping a call-leg WebSocket accepted by aiohttp."""

    def __init__(self, websocket: web.WebSocketResponse | None = None) -> None:
        self._ws = websocket
        self._closed = False

    async def connect(self, **kwargs) -> None:
        ws = kwargs.get("websocket")
        if ws is not None:
            self._ws = ws
        if self._ws is None:
            raise ValueError("An accepted WebSocket connection is required")

    async def send(self, data: bytes | str) -> None:
        if self._ws is None or self._ws.closed:
            raise PeerClosed("Call leg is closed")
        try:
            if isinstance(data, bytes):
                await self._ws.send_bytes(data)
            else:
                await self._ws.send_str(data)
        except ConnectionError as e:
            raise TransportError(f"Call leg send failed: {e}") from e

    async def recv(self) -> bytes | str:
        if self._ws is None:
            raise PeerClosed("Call leg is closed")
        msg = await self._ws.receive()
        if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
            return msg.data
        if msg.type == aiohttp.WSMsgType.ERROR:
            raise TransportError(f"Call leg failed: {self._ws.exception()}")
        # CLOSE, CLOSING, CLOSED
        raise PeerClosed("Call leg closed the connection", code=self._ws.close_code)

    async def ping(self) -> None:
        if self._ws is None or self._ws.closed:
            raise PeerClosed("Call leg is closed")
        try:
            await self._ws.ping()
        except ConnectionError as e:
            raise TransportError(f"Call leg ping failed: {e}") from e

    async def disconnect(self) -> None:
        if self._closed or self._ws is None:
            return
        self._closed = True
        await self._ws.close()
        logger.info("Call leg WebSocket disconnected")

    def is_connected(self) -> bool:
        return self._ws is not None and not self._closed and not self._ws.closed


CallLegHandler = Callable[[CallLegSocket], Awaitable[None]]


class CallLegListener:
    """Accepts call-leg WebSocket upgrades on exactly one path.

    Upgrade requests for any other path have their transport closed
    immediately, without a response body. Accepted connections are wrapped
    in a :class:`CallLegSocket` and handed to ``handler``.

    Usage:
        listener = CallLegListener("/media-stream", relay.handle_call_leg)
        app = web.Application(middlewares=[listener.middleware()])
        app.router.add_get(listener.path, listener.handle_upgrade)
    """

    def __init__(self, path: str, handler: CallLegHandler) -> None:
        self.path = path
        self._handler = handler

    def accepts(self, path: str) -> bool:
        return path == self.path

    async def handle_upgrade(self, request: web.Request) -> web.StreamResponse:
        ws = web.WebSocketResponse(max_msg_size=MAX_MESSAGE_SIZE)
        await ws.prepare(request)
        logger.info(f"Call leg connected from {request.remote}")

        transport = CallLegSocket(websocket=ws)
        try:
            await self._handler(transport)
        finally:
            await transport.disconnect()
        return ws

    def middleware(self):
        """Build the aiohttp middleware that drops foreign upgrade requests."""

        @web.middleware
        async def reject_foreign_upgrades(request: web.Request, handler):
            if _is_upgrade(request) and not self.accepts(request.path):
                logger.warning(f"Rejected WebSocket upgrade for {request.path} (expected {self.path})")
                if request.transport is not None:
                    request.transport.close()
                return web.Response(status=404)
            return await handler(request)

        return reject_foreign_upgrades


def _is_upgrade(request: web.Request) -> bool:
    return request.headers.get("Upgrade", "").lower() == "websocket"


def _close_code(exc: websockets.exceptions.ConnectionClosed) -> int | None:
    frame = exc.rcvd or exc.sent
    return frame.code if frame is not None else None


def _redact(url: str) -> str:
    """Strip query parameters (signed tokens, API keys) from a URL for logging."""
    return url.split("?", 1)[0]
