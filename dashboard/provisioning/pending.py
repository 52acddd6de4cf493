"""Overlay of accepted commands awaiting confirmation from the event stream."""
from __future__ import annotations

from typing import Dict, List, Optional, Tuple

from .state import CommandKind, PendingCommand, normalize_mac, utcnow

_Key = Tuple[CommandKind, Optional[str]]


class PendingCommands:
    """Optimistic state for display only.

    Entries are added as a command is sent and withdrawn if it is rejected;
    otherwise they go when the stream confirms them or when the session ends.
    Confirmed state never reads from here except to authorise a retry edge.
    """

    def __init__(self) -> None:
        self._entries: Dict[_Key, PendingCommand] = {}

    def add(self, kind: CommandKind, mac: Optional[str] = None) -> PendingCommand:
        key = (kind, normalize_mac(mac) if mac else None)
        entry = PendingCommand(kind=kind, issued_at=utcnow(), mac=key[1])
        self._entries[key] = entry
        return entry

    def has(self, kind: CommandKind, mac: Optional[str] = None) -> bool:
        return (kind, normalize_mac(mac) if mac else None) in self._entries

    def resolve(self, kind: CommandKind, mac: Optional[str] = None) -> bool:
        return self._entries.pop((kind, normalize_mac(mac) if mac else None), None) is not None

    def resolve_device(self, mac: str) -> None:
        mac = normalize_mac(mac)
        for key in [key for key in self._entries if key[1] == mac]:
            del self._entries[key]

    def clear(self) -> None:
        self._entries.clear()

    def for_device(self, mac: str) -> List[PendingCommand]:
        mac = normalize_mac(mac)
        return [entry for key, entry in self._entries.items() if key[1] == mac]

    def snapshot(self) -> List[PendingCommand]:
        return sorted(self._entries.values(), key=lambda entry: entry.issued_at)

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["PendingCommands"]
