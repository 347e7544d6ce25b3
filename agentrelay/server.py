"""HTTP + WebSocket server for agentrelay.

One aiohttp application on one port serves:

    GET  /               status JSON (health and configuration presence)
    *    /voice          Twilio voice webhook; TwiML that opens the Media Stream
    *    /test           static diagnostic TwiML
    GET  /calls          most recent call-log entries
    GET  <listen path>   the Media Stream WebSocket (call leg)

Upgrade requests for any path other than the listen path are dropped by
the call-leg listener's middleware.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any

from aiohttp import web
from loguru import logger

from agentrelay import twiml
from agentrelay.calllog import CallLog
from agentrelay.relay import AgentRelay
from agentrelay.transports.websocket import CallLegListener


class RelayServer:
    """Serves the relay's HTTP endpoints and media-stream WebSocket.

    Usage:
        server = RelayServer(AgentRelay(config))
        await server.start()
        # ... later
        await server.stop()
    """

    def __init__(self, relay: AgentRelay, call_log: CallLog | None = None) -> None:
        self.relay = relay
        self.config = relay.config
        self.call_log = call_log or CallLog(max_entries=self.config.call_log.max_entries)
        self.listener = CallLegListener(self.config.listen.path, relay.handle_call_leg)
        self._runner: web.AppRunner | None = None

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self.listener.middleware()])
        app.router.add_get(self.listener.path, self.listener.handle_upgrade)
        app.router.add_get("/", self.status)
        app.router.add_route("*", "/voice", self.voice)
        app.router.add_route("*", "/test", self.diagnostic)
        app.router.add_get("/calls", self.calls)
        return app

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def status(self, request: web.Request) -> web.Response:
        agent = self.config.agent
        return web.json_response({
            "status": "running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "agent_id": agent.agent_id,
            "api_key": "Configured" if self.config.api_key_configured else "Missing",
            "mode": agent.mode.value,
            "listen_path": self.config.listen.path,
            "active_sessions": self.relay.sessions.active_count,
            "warnings": self.config.warnings(),
        })

    async def voice(self, request: web.Request) -> web.Response:
        params = await _webhook_params(request)
        entry = self.call_log.record(
            call_sid=params.get("CallSid", ""),
            from_number=params.get("From", ""),
            to_number=params.get("To", ""),
            endpoint="/voice",
        )
        logger.info(f"Incoming call {entry.call_sid or '?'} from {entry.from_number or 'unknown'}")

        url = twiml.stream_url(request.host, self.config.listen.path, self.config.listen.public_url)
        return web.Response(text=twiml.connect_stream(url), content_type="text/xml")

    async def diagnostic(self, request: web.Request) -> web.Response:
        body = twiml.say_and_hangup(self.config.diagnostic.message, self.config.diagnostic.language)
        return web.Response(text=body, content_type="text/xml")

    async def calls(self, request: web.Request) -> web.Response:
        try:
            limit = int(request.query.get("limit", "20"))
        except ValueError:
            raise web.HTTPBadRequest(text="limit must be an integer")
        entries = self.call_log.recent(limit)
        return web.json_response({
            "calls": [entry.model_dump(mode="json") for entry in entries],
            "total": len(self.call_log),
        })

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        for warning in self.config.warnings():
            logger.warning(f"Configuration: {warning}")

        listen = self.config.listen
        self._runner = web.AppRunner(self.create_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, listen.host, listen.port)
        await site.start()
        logger.info(f"agentrelay listening on http://{listen.host}:{listen.port} (media stream at {listen.path})")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
            logger.info("agentrelay server stopped")

    async def serve_forever(self) -> None:
        """Start and run the server until cancelled."""
        await self.start()
        try:
            await asyncio.Future()  # Run forever
        finally:
            await self.stop()


async def _webhook_params(request: web.Request) -> dict[str, Any]:
    """Twilio sends webhook fields as a form (POST) or query string (GET)."""
    params: dict[str, Any] = dict(request.query)
    if request.method == "POST":
        form = await request.post()
        params.update({key: str(value) for key, value in form.items()})
    return params
