"""Shared state definitions for the batch provisioning engine."""
from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional


class SessionState(str, enum.Enum):
    DISCOVERING = "discovering"
    ACTIVE = "active"
    PAUSED = "paused"
    CLOSING = "closing"
    CLOSED = "closed"


class DeviceState(str, enum.Enum):
    DISCOVERED = "discovered"
    PROVISIONING = "provisioning"
    PROVISIONED = "provisioned"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    ERROR = "error"


class EventType(str, enum.Enum):
    SESSION_UPDATED = "session_updated"
    DEVICE_DISCOVERED = "device_discovered"
    DEVICE_STATE_CHANGED = "device_state_changed"
    DEVICE_REMOVED = "device_removed"
    NETWORK_STATUS = "network_status"
    CONNECTION_ESTABLISHED = "connection_established"
    HEARTBEAT = "heartbeat"
    ERROR = "error"


class CommandKind(str, enum.Enum):
    START = "start"
    STOP = "stop"
    PAUSE = "pause"
    RESUME = "resume"
    PROVISION = "provision"
    RETRY = "retry"
    SKIP = "skip"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Aware UTC datetime; a value without an offset is taken to be UTC already."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_timestamp(previous: Optional[datetime], candidate: Optional[datetime] = None) -> datetime:
    """Return a timestamp strictly later than ``previous``."""

    value = as_utc(candidate) if candidate else utcnow()
    if previous is not None and value <= as_utc(previous):
        value = as_utc(previous) + timedelta(microseconds=1)
    return value


@dataclass(frozen=True)
class Counters:
    device_count: int = 0
    provisioned_count: int = 0
    verified_count: int = 0
    failed_count: int = 0

    def merged(self, other: "Counters") -> "Counters":
        """Field-wise maximum; counters never move backwards inside a session."""

        return Counters(
            device_count=max(self.device_count, other.device_count),
            provisioned_count=max(self.provisioned_count, other.provisioned_count),
            verified_count=max(self.verified_count, other.verified_count),
            failed_count=max(self.failed_count, other.failed_count),
        )


@dataclass(frozen=True)
class Session:
    id: str
    state: SessionState
    target_ssid: str
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime] = None
    counters: Counters = field(default_factory=Counters)
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DeviceCandidate:
    mac: str
    state: DeviceState
    discovered_at: datetime
    state_changed_at: datetime
    ip: str = ""
    rssi: int = 0
    firmware_version: str = ""
    in_allowlist: bool = False
    retry_count: int = 0
    error_message: Optional[str] = None
    container_id: Optional[str] = None
    provisioned_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None
    progress: Optional[int] = None


@dataclass(frozen=True)
class NetworkStatus:
    ssid: str
    is_active: bool
    connected_devices: int


@dataclass(frozen=True)
class RecoverableSessionRecord:
    """Durable summary used to render the resume prompt after a restart."""

    id: str
    state: SessionState
    target_ssid: str
    updated_at: datetime
    counters: Counters = field(default_factory=Counters)

    @classmethod
    def from_session(cls, session: Session) -> "RecoverableSessionRecord":
        return cls(
            id=session.id,
            state=session.state,
            target_ssid=session.target_ssid,
            updated_at=session.updated_at,
            counters=session.counters,
        )


@dataclass(frozen=True)
class PendingCommand:
    """Issued-but-unconfirmed command; shown to operators, never merged into confirmed state."""

    kind: CommandKind
    issued_at: datetime
    mac: Optional[str] = None


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the mirrored session published after every update."""

    session: Optional[Session] = None
    devices: Mapping[str, DeviceCandidate] = field(default_factory=lambda: MappingProxyType({}))
    network: Optional[NetworkStatus] = None
    connection: ConnectionState = ConnectionState.DISCONNECTED
    resyncing: bool = False

    @property
    def is_open(self) -> bool:
        return self.session is not None and self.session.state is not SessionState.CLOSED

    def device(self, mac: str) -> Optional[DeviceCandidate]:
        return self.devices.get(normalize_mac(mac))

    def device_counts(self) -> Dict[str, int]:
        counts = {state.value: 0 for state in DeviceState}
        for device in self.devices.values():
            counts[device.state.value] += 1
        counts["total"] = len(self.devices)
        return counts

    def with_devices(self, devices: Dict[str, DeviceCandidate]) -> "SessionSnapshot":
        return replace(self, devices=MappingProxyType(dict(devices)))


@dataclass
class EngineEvent:
    """Notice distributed to subscribers (UI, logging, persistence observers)."""

    type: str
    data: Dict[str, Any]
    session_state: Optional[SessionState] = None
    connection: Optional[ConnectionState] = None
    error: Optional[str] = None


def normalize_mac(mac: str) -> str:
    return mac.strip().upper().replace("-", ":")


__all__ = [
    "SessionState",
    "DeviceState",
    "ConnectionState",
    "EventType",
    "CommandKind",
    "Counters",
    "Session",
    "DeviceCandidate",
    "NetworkStatus",
    "RecoverableSessionRecord",
    "PendingCommand",
    "SessionSnapshot",
    "EngineEvent",
    "normalize_mac",
    "next_timestamp",
    "as_utc",
    "utcnow",
]
