"""Agent-leg connector.

Opens the outbound WebSocket to the conversational agent in one of two
interchangeable modes:

* ``signed_url``: fetch a pre-signed URL, open it without extra headers,
  and let the bridge send ``conversation_initiation_client_data``.
* ``direct``: open the conversation endpoint with the agent id in the query
  and the API key in a header or query parameter. The connection is
  configured by those parameters, so no initial payload is sent.

Both modes return an :class:`AgentLeg`; the bridge only looks at
``send_initial_config``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any
from urllib.parse import urlencode

from loguru import logger

from agentrelay.agent.signed_url import fetch_signed_url
from agentrelay.config import AgentConfig, ConnectionMode, DirectAuth
from agentrelay.errors import ConnectTimeout
from agentrelay.serializers.elevenlabs import ElevenLabsSerializer
from agentrelay.transports.base import BaseTransport
from agentrelay.transports.websocket import AgentWebSocketTransport


@dataclass
class AgentLeg:
    """An open agent-leg connection, ready for the bridge."""

    transport: BaseTransport
    send_initial_config: bool
    mode: ConnectionMode = ConnectionMode.SIGNED_URL
    initial_config: str | None = field(default=None, repr=False)


class AgentConnector:
    """Opens agent-leg connections for one agent configuration.

    Args:
        config: Agent settings (id, key, mode, overrides).
        timeout: Upper bound in seconds for fetching the signed URL and
            opening the socket together.
    """

    def __init__(self, config: AgentConfig, timeout: float = 10.0) -> None:
        self.config = config
        self.timeout = timeout
        self._serializer = ElevenLabsSerializer()

    async def connect(self) -> AgentLeg:
        """Open the agent leg.

        Raises:
            ConnectTimeout: The whole attach took longer than ``timeout``.
            UpstreamAuthFailure / UpstreamUnavailable: Signed URL fetch failed.
            AgentConnectFailure: The WebSocket could not be opened.
        """
        try:
            return await asyncio.wait_for(self._open(), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise ConnectTimeout(
                f"Agent leg not open after {self.timeout:.1f}s ({self.config.mode.value} mode)"
            ) from e

    async def _open(self) -> AgentLeg:
        if self.config.mode == ConnectionMode.SIGNED_URL:
            signed_url = await fetch_signed_url(
                self.config.agent_id,
                self.config.api_key,
                endpoint=self.config.signed_url_endpoint,
                timeout=self.timeout,
            )
            transport = AgentWebSocketTransport(url=signed_url)
            await transport.connect()
            return AgentLeg(
                transport=transport,
                send_initial_config=True,
                mode=ConnectionMode.SIGNED_URL,
                initial_config=self.build_initial_config(),
            )

        url, headers = self.direct_endpoint()
        transport = AgentWebSocketTransport(url=url, headers=headers)
        await transport.connect()
        return AgentLeg(transport=transport, send_initial_config=False, mode=ConnectionMode.DIRECT)

    def direct_endpoint(self) -> tuple[str, dict[str, str]]:
        """URL and headers for a direct-mode connection."""
        params = {"agent_id": self.config.agent_id}
        headers: dict[str, str] = {}
        if self.config.api_key:
            if self.config.auth == DirectAuth.QUERY:
                params["xi-api-key"] = self.config.api_key
            else:
                headers["xi-api-key"] = self.config.api_key
        return f"{self.config.conversation_url}?{urlencode(params)}", headers

    def build_initial_config(self) -> str:
        """Build the ``conversation_initiation_client_data`` message."""
        agent: dict[str, Any] = {}
        if self.config.prompt:
            agent["prompt"] = {"prompt": self.config.prompt}
        if self.config.first_message:
            agent["first_message"] = self.config.first_message
        if self.config.language:
            agent["language"] = self.config.language

        override: dict[str, Any] = {"agent": agent} if agent else {}
        logger.debug(f"Initial agent config override: {override}")
        return self._serializer.build_initiation(override, self.config.dynamic_variables)
