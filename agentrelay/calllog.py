"""Bounded in-memory call log for the webhook endpoints.

Owned by the HTTP server, not by the bridge. Only the most recent
``max_entries`` calls are kept; nothing is persisted.
"""

from __future__ import annotations

from collections import deque
from datetime import datetime, timezone

from pydantic import BaseModel, Field


class CallLogEntry(BaseModel):
    call_sid: str = ""
    from_number: str = ""
    to_number: str = ""
    endpoint: str = ""
    received_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class CallLog:
    """Ring buffer of webhook calls, newest last."""

    def __init__(self, max_entries: int = 100) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._entries: deque[CallLogEntry] = deque(maxlen=max_entries)

    def record(self, **fields) -> CallLogEntry:
        entry = CallLogEntry(**fields)
        self._entries.append(entry)
        return entry

    def recent(self, limit: int | None = None) -> list[CallLogEntry]:
        """Most recent entries first."""
        entries = list(reversed(self._entries))
        if limit is not None:
            entries = entries[: max(limit, 0)]
        return entries

    @property
    def capacity(self) -> int:
        return self._entries.maxlen or 0

    def __len__(self) -> int:
        return len(self._entries)
