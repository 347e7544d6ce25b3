"""Twilio Media Streams serializer (the call leg).

Translates between Twilio's Media Streams WebSocket protocol and the typed
call-leg events. Twilio streams audio as base64-encoded mu-law at 8kHz
over JSON WebSocket messages, selected by the ``event`` field.

Protocol reference:
    https://www.twilio.com/docs/voice/media-streams/websocket-messages
"""

from __future__ import annotations

import json
from typing import Any

from pydantic import ValidationError

from agentrelay.core.events import (
    CallConnected,
    CallLegEvent,
    DtmfPressed,
    MarkReached,
    MediaChunk,
    StreamStart,
    StreamStop,
    UnknownCallEvent,
)
from agentrelay.errors import MalformedFrame
from agentrelay.serializers.base import BaseSerializer


class TwilioSerializer(BaseSerializer):
    """Serializer for the Twilio Media Streams WebSocket protocol.

    Inbound message types handled:
        * ``connected`` -- initial handshake acknowledgement.
        * ``start``     -- stream metadata, carries the ``streamSid``.
        * ``media``     -- audio payload.
        * ``dtmf``      -- DTMF digit.
        * ``mark``      -- playback reached a previously sent mark.
        * ``stop``      -- stream ended.

    Any unrecognised message type is surfaced as :class:`UnknownCallEvent`.

    Every outbound message carries the stream's ``streamSid``; builders
    refuse to produce one without it.
    """

    @property
    def name(self) -> str:
        return "twilio"

    # ------------------------------------------------------------------
    # Deserialization (provider -> typed events)
    # ------------------------------------------------------------------

    def deserialize(self, raw: bytes | str | dict) -> CallLegEvent:
        msg = self._parse_message(raw)
        try:
            return self._to_event(msg)
        except ValidationError as e:
            raise MalformedFrame(f"Invalid {msg.get('event')!r} frame: {e.error_count()} bad field(s)") from e

    def _to_event(self, msg: dict[str, Any]) -> CallLegEvent:
        event_type = msg.get("event", "")
        stream_sid = msg.get("streamSid") or ""

        if event_type == "connected":
            return CallConnected(
                protocol=str(msg.get("protocol", "")),
                version=str(msg.get("version", "")),
            )

        if event_type == "start":
            return self._handle_start(msg)

        if event_type == "media":
            media = self._section(msg, "media")
            return MediaChunk(
                stream_sid=stream_sid,
                track=media.get("track", "inbound"),
                chunk=_to_int(media.get("chunk")),
                data=self._decode_audio(media.get("payload")),
            )

        if event_type == "dtmf":
            dtmf = self._section(msg, "dtmf")
            return DtmfPressed(stream_sid=stream_sid, digit=str(dtmf.get("digit", "")))

        if event_type == "mark":
            mark = self._section(msg, "mark")
            return MarkReached(stream_sid=stream_sid, name=str(mark.get("name", "")))

        if event_type == "stop":
            return StreamStop(stream_sid=stream_sid)

        return UnknownCallEvent(
            stream_sid=stream_sid,
            raw_type=str(event_type),
            payload=msg,
        )

    # ------------------------------------------------------------------
    # Outbound messages
    # ------------------------------------------------------------------

    def build_media(self, stream_sid: str, data: bytes) -> str:
        """Build a ``media`` message that plays ``data`` to the caller."""
        _require_stream_sid(stream_sid)
        return json.dumps(
            {
                "event": "media",
                "streamSid": stream_sid,
                "media": {
                    "payload": self._encode_audio(data),
                },
            }
        )

    def build_clear(self, stream_sid: str) -> str:
        """Build a ``clear`` message.

        Instructs Twilio to discard any buffered audio that has not yet
        been played to the caller. Used when the agent is interrupted.
        """
        _require_stream_sid(stream_sid)
        return json.dumps(
            {
                "event": "clear",
                "streamSid": stream_sid,
            }
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _handle_start(self, msg: dict[str, Any]) -> StreamStart:
        start_data = self._section(msg, "start")
        return StreamStart(
            stream_sid=start_data.get("streamSid") or msg.get("streamSid") or "",
            call_sid=start_data.get("callSid", ""),
            account_sid=start_data.get("accountSid", ""),
            custom_parameters=start_data.get("customParameters") or {},
            media_format=start_data.get("mediaFormat") or {},
        )


def _require_stream_sid(stream_sid: str) -> None:
    if not stream_sid:
        raise ValueError("streamSid is required on every outbound call-leg message")


def _to_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0
