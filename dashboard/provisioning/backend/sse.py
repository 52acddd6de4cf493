"""Incremental parser for ``text/event-stream`` bodies."""
from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class SSEFrame:
    event: Optional[str]
    data: str
    id: Optional[str] = None
    retry_ms: Optional[int] = None


class SSEParser:
    """Feed decoded lines, collect frames on blank-line boundaries."""

    def __init__(self) -> None:
        self._event: Optional[str] = None
        self._data: List[str] = []
        self._id: Optional[str] = None
        self._retry: Optional[int] = None
        self.last_event_id: Optional[str] = None

    def feed(self, line: str) -> Optional[SSEFrame]:
        line = line.rstrip("\r\n")
        if not line:
            return self._flush()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "event":
            self._event = value or None
        elif name == "data":
            self._data.append(value)
        elif name == "id":
            if "\0" not in value:
                self._id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
        return None

    def _flush(self) -> Optional[SSEFrame]:
        if not self._data and self._event is None:
            self._reset()
            return None
        frame = SSEFrame(event=self._event, data="\n".join(self._data), id=self._id, retry_ms=self._retry)
        if self._id is not None:
            self.last_event_id = self._id
        self._reset()
        return frame

    def _reset(self) -> None:
        self._event = None
        self._data = []
        self._id = None
        self._retry = None


__all__ = ["SSEFrame", "SSEParser"]
