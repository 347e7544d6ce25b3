"""Error taxonomy for agentrelay.

Every failure a session can run into maps to one :class:`ErrorKind`. The
bridge turns each of them into a :class:`~agentrelay.core.events.SessionEvent`
so an external observer can classify failures without parsing log text.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    UPSTREAM_AUTH_FAILURE = "upstream_auth_failure"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    AGENT_CONNECT_FAILURE = "agent_connect_failure"
    CONNECT_TIMEOUT = "connect_timeout"
    MALFORMED_FRAME = "malformed_frame"
    PEER_CLOSED = "peer_closed"
    TRANSPORT_ERROR = "transport_error"


class RelayError(Exception):
    """Base class for all agentrelay errors."""

    kind: ErrorKind = ErrorKind.TRANSPORT_ERROR


class UpstreamAuthFailure(RelayError):
    """The agent provider rejected the API key (HTTP 401/403)."""

    kind = ErrorKind.UPSTREAM_AUTH_FAILURE


class UpstreamUnavailable(RelayError):
    """The signed-URL endpoint failed or could not be reached."""

    kind = ErrorKind.UPSTREAM_UNAVAILABLE

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class MalformedResponse(UpstreamUnavailable):
    """The signed-URL endpoint answered with a body we could not parse."""


class AgentConnectFailure(RelayError):
    """The agent-leg WebSocket could not be opened."""

    kind = ErrorKind.AGENT_CONNECT_FAILURE


class ConnectTimeout(RelayError):
    """Attaching the agent leg did not finish within the configured bound."""

    kind = ErrorKind.CONNECT_TIMEOUT


class MalformedFrame(RelayError):
    """A single text frame on either leg was not valid JSON."""

    kind = ErrorKind.MALFORMED_FRAME


class PeerClosed(RelayError):
    """The remote side closed the connection normally."""

    kind = ErrorKind.PEER_CLOSED

    def __init__(self, message: str = "connection closed", code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class TransportError(RelayError):
    """Low-level socket failure on either leg."""

    kind = ErrorKind.TRANSPORT_ERROR
