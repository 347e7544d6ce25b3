"""agentrelay - Bridge Twilio phone calls to a hosted conversational AI agent.

Each inbound Twilio Media Stream gets its own session: caller audio is
forwarded to the agent's WebSocket, agent audio is played back into the
call, and either side hanging up tears the whole session down.

Quick start (environment-driven):
    $ pip install agentrelay
    $ export ELEVENLABS_API_KEY=... AGENT_ID=...
    $ agentrelay run

Quick start (programmatic):
    from agentrelay import AgentRelay

    relay = AgentRelay({
        "agent_id": "agent_...",
        "api_key": "...",
        "port": 3000,
    })

    @relay.on_session_end
    async def log_call(session):
        print(session.summary())

    relay.run()
"""

__version__ = "0.1.0"

# Core
from agentrelay.relay import AgentRelay
from agentrelay.bridge import SessionBridge
from agentrelay.config import (
    AgentConfig,
    ConnectionMode,
    DirectAuth,
    EarlyAudioPolicy,
    RelayConfig,
    SessionConfig,
    load_config,
)
from agentrelay.session import RelaySession, SessionRegistry, SessionState
from agentrelay.server import RelayServer

# Errors
from agentrelay.errors import (
    AgentConnectFailure,
    ConnectTimeout,
    ErrorKind,
    MalformedFrame,
    MalformedResponse,
    PeerClosed,
    RelayError,
    TransportError,
    UpstreamAuthFailure,
    UpstreamUnavailable,
)

# Events
from agentrelay.core.events import SessionEvent, SessionEventKind

# Agent leg
from agentrelay.agent import AgentConnector, AgentLeg, fetch_signed_url

__all__ = [
    # Core
    "AgentRelay",
    "SessionBridge",
    "RelayConfig",
    "AgentConfig",
    "SessionConfig",
    "ConnectionMode",
    "DirectAuth",
    "EarlyAudioPolicy",
    "load_config",
    "RelaySession",
    "SessionRegistry",
    "SessionState",
    "RelayServer",
    # Errors
    "RelayError",
    "ErrorKind",
    "UpstreamAuthFailure",
    "UpstreamUnavailable",
    "MalformedResponse",
    "AgentConnectFailure",
    "ConnectTimeout",
    "MalformedFrame",
    "PeerClosed",
    "TransportError",
    # Events
    "SessionEvent",
    "SessionEventKind",
    # Agent leg
    "AgentConnector",
    "AgentLeg",
    "fetch_signed_url",
]
