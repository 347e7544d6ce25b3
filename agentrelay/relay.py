"""AgentRelay - accepts call legs and runs one SessionBridge per call.

Usage (config-driven):
    relay = AgentRelay("relay.yaml")
    relay.run()

Usage (programmatic):
    relay = AgentRelay({"agent_id": "agent_123", "api_key": "...", "port": 3000})

    @relay.on_event
    async def observe(event: SessionEvent):
        if event.is_failure:
            metrics.increment(event.kind.value)

    relay.run()
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from agentrelay.agent.connector import AgentConnector
from agentrelay.bridge import SessionBridge
from agentrelay.config import RelayConfig, load_config
from agentrelay.core.events import SessionEvent
from agentrelay.session import RelaySession, SessionRegistry
from agentrelay.transports.base import BaseTransport

EventHandler = Callable[..., Awaitable[Any]]


class AgentRelay:
    """Relays Twilio Media Streams calls to a conversational agent.

    Holds the read-only configuration, the agent connector shared by all
    sessions, and the registry of live bridges. Sessions share nothing
    mutable with each other.
    """

    def __init__(
        self,
        config: RelayConfig | dict | str | Path | None = None,
        connector: AgentConnector | None = None,
    ) -> None:
        self.config = load_config(config)
        self.sessions = SessionRegistry()
        self.connector = connector or AgentConnector(
            self.config.agent,
            timeout=self.config.session.connect_timeout,
        )

        self._handlers: dict[str, list[EventHandler]] = {
            "on_session_start": [],
            "on_session_end": [],
            "on_event": [],  # every SessionEvent
        }

    # ------------------------------------------------------------------
    # Decorator API for event handlers
    # ------------------------------------------------------------------

    def on_session_start(self, fn: EventHandler) -> EventHandler:
        """Register a handler for new sessions.

        The handler receives (session: RelaySession).
        """
        self._handlers["on_session_start"].append(fn)
        return fn

    def on_session_end(self, fn: EventHandler) -> EventHandler:
        """Register a handler for finished sessions.

        The handler receives (session: RelaySession) after both legs closed.
        """
        self._handlers["on_session_end"].append(fn)
        return fn

    def on_event(self, fn: EventHandler) -> EventHandler:
        """Register a handler for every session lifecycle and failure event.

        The handler receives (event: SessionEvent).
        """
        self._handlers["on_event"].append(fn)
        return fn

    # ------------------------------------------------------------------
    # Connection handling
    # ------------------------------------------------------------------

    async def handle_call_leg(self, transport: BaseTransport) -> None:
        """Run a session for one accepted call-leg connection until it ends."""
        bridge = SessionBridge(
            transport,
            self.connector,
            config=self.config.session,
            on_event=self._dispatch_event,
        )
        self.sessions.add(bridge)
        await self._run_handlers("on_session_start", bridge.session)
        try:
            await bridge.run()
        finally:
            self.sessions.remove(bridge.session.session_id)
            await self._run_handlers("on_session_end", bridge.session)

    # ------------------------------------------------------------------
    # Main run loop
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the relay server (blocking)."""
        from agentrelay.server import RelayServer

        logger.info(f"agentrelay starting: agent={self.config.agent.agent_id} mode={self.config.agent.mode.value}")
        try:
            asyncio.run(RelayServer(self).serve_forever())
        except KeyboardInterrupt:
            logger.info("agentrelay stopped by user")

    # ------------------------------------------------------------------
    # Event dispatching
    # ------------------------------------------------------------------

    async def _dispatch_event(self, event: SessionEvent) -> None:
        for handler in self._handlers["on_event"]:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"on_event handler error: {e}")

    async def _run_handlers(self, name: str, session: RelaySession) -> None:
        for handler in self._handlers[name]:
            try:
                await handler(session)
            except Exception as e:
                logger.error(f"{name} handler error: {e}")
