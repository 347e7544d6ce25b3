"""Relay session state for agentrelay.

Each accepted call leg gets a RelaySession that tracks its state machine
position, its two transports, the correlation identifier, and counters.
The SessionRegistry is owned by one AgentRelay instance and exists only so
the status endpoint can count live sessions; sessions never look at each
other.
"""

from __future__ import annotations

import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from loguru import logger

from agentrelay.errors import ErrorKind
from agentrelay.transports.base import BaseTransport

if TYPE_CHECKING:
    from agentrelay.bridge import SessionBridge


class SessionState(str, Enum):
    CONNECTING = "connecting"
    AWAITING_AGENT_READY = "awaiting_agent_ready"
    BRIDGING = "bridging"
    CLOSING = "closing"
    CLOSED = "closed"


# Legal forward transitions; CLOSING is reachable from every live state.
_TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    SessionState.CONNECTING: frozenset({SessionState.AWAITING_AGENT_READY, SessionState.CLOSING}),
    SessionState.AWAITING_AGENT_READY: frozenset({SessionState.BRIDGING, SessionState.CLOSING}),
    SessionState.BRIDGING: frozenset({SessionState.CLOSING}),
    SessionState.CLOSING: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


@dataclass
class RelaySession:
    """Represents a single call flowing through the relay.

    Each session has:
    - A call-leg transport (Twilio side), owned from accept to teardown
    - An agent-leg transport, attached once the agent endpoint is open
    - The ``stream_sid`` correlation id, unset until the call leg starts
    """

    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    # Correlation identifier from the call leg's "start" event
    stream_sid: str = ""
    call_sid: str = ""
    custom_parameters: dict[str, Any] = field(default_factory=dict)

    # Set when the agent reports conversation metadata
    conversation_id: str = ""

    # Transports
    call_leg: BaseTransport | None = None
    agent_leg: BaseTransport | None = None

    state: SessionState = SessionState.CONNECTING
    close_reason: ErrorKind | None = None
    started_at: float = field(default_factory=time.time)
    ended_at: float | None = None

    # Counters
    frames_to_agent: int = 0
    frames_to_call: int = 0
    frames_dropped: int = 0
    malformed_frames: int = 0

    # Caller audio held until the agent leg can take it
    early_audio_max_frames: int = 250
    _early_audio: deque[bytes] = field(default_factory=deque)

    def transition(self, new_state: SessionState) -> None:
        """Move to ``new_state``.

        Raises:
            ValueError: If the transition is not legal from the current state.
        """
        if new_state not in _TRANSITIONS[self.state]:
            raise ValueError(f"Illegal session transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Session {self.session_id}: {self.state.value} -> {new_state.value}")
        self.state = new_state
        if new_state == SessionState.CLOSED:
            self.ended_at = time.time()

    @property
    def is_active(self) -> bool:
        return self.state not in (SessionState.CLOSING, SessionState.CLOSED)

    @property
    def has_stream(self) -> bool:
        return bool(self.stream_sid)

    # ------------------------------------------------------------------
    # Early audio buffer
    # ------------------------------------------------------------------

    def hold_audio(self, data: bytes) -> None:
        """Buffer caller audio, dropping the oldest frame when full.

        A buffer size of zero or less holds nothing: every frame is dropped.
        """
        if self.early_audio_max_frames <= 0:
            self.frames_dropped += 1
            return
        if len(self._early_audio) >= self.early_audio_max_frames:
            self._early_audio.popleft()
            self.frames_dropped += 1
        self._early_audio.append(data)

    def drain_audio(self) -> list[bytes]:
        """Take every buffered frame, oldest first."""
        frames = list(self._early_audio)
        self._early_audio.clear()
        return frames

    @property
    def held_frames(self) -> int:
        return len(self._early_audio)

    @property
    def duration_ms(self) -> int:
        """Session duration in milliseconds."""
        end = self.ended_at or time.time()
        return int((end - self.started_at) * 1000)

    def summary(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "stream_sid": self.stream_sid,
            "call_sid": self.call_sid,
            "conversation_id": self.conversation_id,
            "state": self.state.value,
            "duration_ms": self.duration_ms,
            "frames_to_agent": self.frames_to_agent,
            "frames_to_call": self.frames_to_call,
            "frames_dropped": self.frames_dropped,
        }


class SessionRegistry:
    """Live bridges of one relay, keyed by session id."""

    def __init__(self) -> None:
        self._bridges: dict[str, SessionBridge] = {}

    def add(self, bridge: SessionBridge) -> None:
        self._bridges[bridge.session.session_id] = bridge
        logger.info(f"Session registered: {bridge.session.session_id}")

    def remove(self, session_id: str) -> None:
        bridge = self._bridges.pop(session_id, None)
        if bridge:
            logger.info(
                f"Session removed: {session_id} "
                f"(duration: {bridge.session.duration_ms}ms)"
            )

    @property
    def active_count(self) -> int:
        """Number of sessions that have not started tearing down."""
        return sum(1 for b in self._bridges.values() if b.session.is_active)

    def __len__(self) -> int:
        return len(self._bridges)
