"""Base serializer interface for agentrelay.

Each leg of a session speaks its own JSON envelope. Serializers are pure
message translators with no I/O: they parse one raw frame into one typed
event, and build outbound frames from plain values.
"""

from __future__ import annotations

import base64
import binascii
import json
from abc import ABC, abstractmethod
from typing import Any

from agentrelay.errors import MalformedFrame


class BaseSerializer(ABC):
    """Abstract base class for leg serializers.

    Key principles:
    - Serializers do NO I/O (no network calls, no file access)
    - They are stateless (per-call state lives in RelaySession)
    - A frame that is not a JSON object, or whose fields have the wrong
      types, raises MalformedFrame
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Human-readable name of this serializer (e.g., 'twilio')."""
        ...

    @abstractmethod
    def deserialize(self, raw: bytes | str | dict) -> Any:
        """Parse a raw frame from the peer into a typed event.

        Raises:
            MalformedFrame: If the frame is not a JSON object, has a field
                of the wrong type, or carries an undecodable audio payload.
        """
        ...

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _parse_message(raw: bytes | str | dict) -> dict[str, Any]:
        """Normalise the raw WebSocket frame into a dict."""
        if isinstance(raw, dict):
            return raw
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            msg = json.loads(raw)
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise MalformedFrame(f"Invalid JSON frame: {e}") from e
        if not isinstance(msg, dict):
            raise MalformedFrame(f"Expected a JSON object, got {type(msg).__name__}")
        return msg

    @staticmethod
    def _section(msg: dict[str, Any], key: str) -> dict[str, Any]:
        """Return the nested object under ``key``; absent means empty."""
        value = msg.get(key)
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise MalformedFrame(f"'{key}' must be an object, got {type(value).__name__}")
        return value

    @staticmethod
    def _decode_audio(payload: Any) -> bytes:
        """Decode a base64 audio payload. Missing payloads decode to b''."""
        if not payload:
            return b""
        if not isinstance(payload, str):
            raise MalformedFrame(f"Audio payload must be a string, got {type(payload).__name__}")
        try:
            return base64.b64decode(payload, validate=True)
        except (binascii.Error, ValueError) as e:
            raise MalformedFrame(f"Invalid base64 audio payload: {e}") from e

    @staticmethod
    def _encode_audio(data: bytes) -> str:
        return base64.b64encode(data).decode("ascii")
