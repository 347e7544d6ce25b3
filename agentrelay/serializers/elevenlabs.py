"""ElevenLabs Conversational AI serializer (the agent leg).

The agent protocol is JSON selected by a ``type`` field. Audio arrives in
one of several shapes depending on the API revision, so all known shapes
are accepted:

    {"type": "audio", "audio": {"chunk": "<b64>"}}
    {"type": "audio", "audio": "<b64>"}
    {"type": "audio", "audio_event": {"audio_base_64": "<b64>", "event_id": 1}}

Protocol reference:
    https://elevenlabs.io/docs/conversational-ai/api-reference/conversational-ai/websocket
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from agentrelay.core.events import (
    AgentAudio,
    AgentLegEvent,
    AgentPing,
    AgentResponse,
    ConversationInitiated,
    Interruption,
    UnknownAgentEvent,
    UserTranscript,
)
from agentrelay.errors import MalformedFrame
from agentrelay.serializers.base import BaseSerializer


class ElevenLabsSerializer(BaseSerializer):
    """Serializer for the ElevenLabs Conversational AI WebSocket protocol."""

    @property
    def name(self) -> str:
        return "elevenlabs"

    def deserialize(self, raw: bytes | str | dict) -> AgentLegEvent:
        msg = self._parse_message(raw)
        try:
            return self._to_event(msg)
        except ValidationError as e:
            raise MalformedFrame(f"Invalid {msg.get('type')!r} frame: {e.error_count()} bad field(s)") from e

    def _to_event(self, msg: dict[str, Any]) -> AgentLegEvent:
        msg_type = msg.get("type", "")

        if msg_type == "conversation_initiation_metadata":
            meta = self._section(msg, "conversation_initiation_metadata_event")
            return ConversationInitiated(
                conversation_id=str(meta.get("conversation_id", "")),
                agent_output_audio_format=str(meta.get("agent_output_audio_format", "")),
                user_input_audio_format=str(meta.get("user_input_audio_format", "")),
            )

        if msg_type == "audio":
            payload, event_id = self._extract_audio(msg)
            return AgentAudio(event_id=event_id, data=self._decode_audio(payload))

        if msg_type == "interruption":
            event = self._section(msg, "interruption_event")
            return Interruption(event_id=event.get("event_id"))

        if msg_type == "ping":
            event = self._section(msg, "ping_event")
            return AgentPing(event_id=event.get("event_id"), ping_ms=event.get("ping_ms"))

        if msg_type == "agent_response":
            event = self._section(msg, "agent_response_event")
            return AgentResponse(text=str(event.get("agent_response", "")))

        if msg_type == "user_transcript":
            event = self._section(msg, "user_transcription_event")
            return UserTranscript(text=str(event.get("user_transcript", "")))

        return UnknownAgentEvent(raw_type=str(msg_type), payload=msg)

    # ------------------------------------------------------------------
    # Outbound messages
    # ------------------------------------------------------------------

    def build_user_audio(self, data: bytes) -> str:
        """Wrap caller audio in the agent's audio-ingestion envelope."""
        return json.dumps({"user_audio_chunk": self._encode_audio(data)})

    def build_pong(self, event_id: int | str) -> str:
        return json.dumps({"type": "pong", "event_id": event_id})

    def build_initiation(
        self,
        config_override: dict[str, Any],
        dynamic_variables: dict[str, Any] | None = None,
    ) -> str:
        """Build the ``conversation_initiation_client_data`` message."""
        message: dict[str, Any] = {
            "type": "conversation_initiation_client_data",
            "conversation_config_override": config_override,
        }
        if dynamic_variables:
            message["dynamic_variables"] = dynamic_variables
        return json.dumps(message)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @classmethod
    def _extract_audio(cls, msg: dict[str, Any]) -> tuple[Any, int | None]:
        audio = msg.get("audio")
        if isinstance(audio, dict) and audio.get("chunk"):
            return audio["chunk"], audio.get("event_id")
        if isinstance(audio, str) and audio:
            return audio, None
        event = cls._section(msg, "audio_event")
        return event.get("audio_base_64"), event.get("event_id")
