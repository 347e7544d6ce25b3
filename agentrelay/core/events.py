"""Typed message model for agentrelay.

Both peers speak loosely-shaped JSON. Serializers parse each frame exactly
once at the boundary into one of the closed variant types below, and the
bridge dispatches on the type instead of poking at optional dict keys.

Audio payloads are carried as raw bytes; the serializers own the base64
encoding for their wire format.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Call leg (Twilio Media Streams)
# ---------------------------------------------------------------------------


class CallEventType(str, Enum):
    CONNECTED = "connected"
    START = "start"
    MEDIA = "media"
    DTMF = "dtmf"
    MARK = "mark"
    STOP = "stop"
    UNKNOWN = "unknown"


class CallEvent(BaseModel):
    """Base for every message received on the call leg."""

    event_type: CallEventType
    stream_sid: str = ""
    received_at: float = Field(default_factory=time.time)


class CallConnected(CallEvent):
    """Initial handshake frame; carries no stream identifier yet."""

    event_type: CallEventType = CallEventType.CONNECTED
    protocol: str = ""
    version: str = ""


class StreamStart(CallEvent):
    """The stream began. ``stream_sid`` is the session correlation id."""

    event_type: CallEventType = CallEventType.START
    call_sid: str = ""
    account_sid: str = ""
    custom_parameters: dict[str, Any] = Field(default_factory=dict)
    media_format: dict[str, Any] = Field(default_factory=dict)


class MediaChunk(CallEvent):
    """One chunk of caller audio, already base64-decoded."""

    event_type: CallEventType = CallEventType.MEDIA
    track: str = "inbound"
    chunk: int = 0
    data: bytes = b""


class DtmfPressed(CallEvent):
    event_type: CallEventType = CallEventType.DTMF
    digit: str = ""


class MarkReached(CallEvent):
    event_type: CallEventType = CallEventType.MARK
    name: str = ""


class StreamStop(CallEvent):
    """The call leg will send no further frames."""

    event_type: CallEventType = CallEventType.STOP


class UnknownCallEvent(CallEvent):
    event_type: CallEventType = CallEventType.UNKNOWN
    raw_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


CallLegEvent = (
    CallConnected
    | StreamStart
    | MediaChunk
    | DtmfPressed
    | MarkReached
    | StreamStop
    | UnknownCallEvent
)


# ---------------------------------------------------------------------------
# Agent leg (ElevenLabs Conversational AI)
# ---------------------------------------------------------------------------


class AgentEventType(str, Enum):
    CONVERSATION_INITIATED = "conversation_initiation_metadata"
    AUDIO = "audio"
    INTERRUPTION = "interruption"
    PING = "ping"
    AGENT_RESPONSE = "agent_response"
    USER_TRANSCRIPT = "user_transcript"
    UNKNOWN = "unknown"


class AgentEvent(BaseModel):
    """Base for every message received on the agent leg."""

    event_type: AgentEventType
    received_at: float = Field(default_factory=time.time)


class ConversationInitiated(AgentEvent):
    """The agent is ready to converse."""

    event_type: AgentEventType = AgentEventType.CONVERSATION_INITIATED
    conversation_id: str = ""
    agent_output_audio_format: str = ""
    user_input_audio_format: str = ""


class AgentAudio(AgentEvent):
    """Synthesized agent speech, already base64-decoded."""

    event_type: AgentEventType = AgentEventType.AUDIO
    event_id: int | str | None = None
    data: bytes = b""


class Interruption(AgentEvent):
    """The caller barged in; queued playback must be flushed."""

    event_type: AgentEventType = AgentEventType.INTERRUPTION
    event_id: int | str | None = None


class AgentPing(AgentEvent):
    """Keepalive from the agent. ``event_id`` is None when the frame had none."""

    event_type: AgentEventType = AgentEventType.PING
    event_id: int | str | None = None
    ping_ms: float | None = None


class AgentResponse(AgentEvent):
    event_type: AgentEventType = AgentEventType.AGENT_RESPONSE
    text: str = ""


class UserTranscript(AgentEvent):
    event_type: AgentEventType = AgentEventType.USER_TRANSCRIPT
    text: str = ""


class UnknownAgentEvent(AgentEvent):
    event_type: AgentEventType = AgentEventType.UNKNOWN
    raw_type: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)


AgentLegEvent = (
    ConversationInitiated
    | AgentAudio
    | Interruption
    | AgentPing
    | AgentResponse
    | UserTranscript
    | UnknownAgentEvent
)


# ---------------------------------------------------------------------------
# Session lifecycle / observability
# ---------------------------------------------------------------------------


class SessionEventKind(str, Enum):
    SESSION_STARTED = "session_started"
    STREAM_STARTED = "stream_started"
    AGENT_CONNECTED = "agent_connected"
    AGENT_READY = "agent_ready"
    SESSION_CLOSED = "session_closed"
    # Failure kinds share their values with errors.ErrorKind
    UPSTREAM_AUTH_FAILURE = "upstream_auth_failure"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    AGENT_CONNECT_FAILURE = "agent_connect_failure"
    CONNECT_TIMEOUT = "connect_timeout"
    MALFORMED_FRAME = "malformed_frame"
    PEER_CLOSED = "peer_closed"
    TRANSPORT_ERROR = "transport_error"


class SessionEvent(BaseModel):
    """A classifiable thing that happened to one session.

    Emitted by the bridge for every lifecycle transition and every failure,
    and delivered to ``AgentRelay.on_event`` handlers.
    """

    kind: SessionEventKind
    session_id: str
    stream_sid: str = ""
    leg: str = ""  # "call", "agent" or "" when not leg-specific
    detail: str = ""
    timestamp: float = Field(default_factory=time.time)

    @property
    def is_failure(self) -> bool:
        return self.kind not in _LIFECYCLE_KINDS


_LIFECYCLE_KINDS = frozenset({
    SessionEventKind.SESSION_STARTED,
    SessionEventKind.STREAM_STARTED,
    SessionEventKind.AGENT_CONNECTED,
    SessionEventKind.AGENT_READY,
    SessionEventKind.SESSION_CLOSED,
    SessionEventKind.PEER_CLOSED,
})
