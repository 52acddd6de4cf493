"""Wire models for orchestrator responses and stream events."""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Type, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..state import (
    Counters,
    DeviceCandidate,
    DeviceState,
    EventType,
    NetworkStatus,
    Session,
    SessionState,
    as_utc,
    normalize_mac,
    utcnow,
)

logger = logging.getLogger(__name__)

# Dotted names are what the orchestrator emits; underscored names are accepted as well.
EVENT_TYPE_ALIASES: Dict[str, EventType] = {
    "session_updated": EventType.SESSION_UPDATED,
    "session.status": EventType.SESSION_UPDATED,
    "session.updated": EventType.SESSION_UPDATED,
    "device_discovered": EventType.DEVICE_DISCOVERED,
    "device.discovered": EventType.DEVICE_DISCOVERED,
    "device_state_changed": EventType.DEVICE_STATE_CHANGED,
    "device.state_changed": EventType.DEVICE_STATE_CHANGED,
    "device_removed": EventType.DEVICE_REMOVED,
    "device.removed": EventType.DEVICE_REMOVED,
    "device.skipped": EventType.DEVICE_REMOVED,
    "network_status": EventType.NETWORK_STATUS,
    "network.status_changed": EventType.NETWORK_STATUS,
    "connection_established": EventType.CONNECTION_ESTABLISHED,
    "connection.established": EventType.CONNECTION_ESTABLISHED,
    "heartbeat": EventType.HEARTBEAT,
    "connection.heartbeat": EventType.HEARTBEAT,
    "error": EventType.ERROR,
}


class MalformedEvent(ValueError):
    """Raised when a stream frame cannot be turned into a known event."""


class _WireModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class SessionModel(_WireModel):
    id: str
    state: SessionState
    target_ssid: str = Field("", validation_alias=AliasChoices("target_ssid", "target_network_ssid"))
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    device_count: int = 0
    provisioned_count: int = 0
    verified_count: int = 0
    failed_count: int = 0
    config: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", "updated_at", "expires_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def to_domain(self) -> Session:
        now = utcnow()
        return Session(
            id=self.id,
            state=self.state,
            target_ssid=self.target_ssid,
            created_at=self.created_at or now,
            updated_at=self.updated_at or now,
            expires_at=self.expires_at,
            counters=Counters(
                device_count=self.device_count,
                provisioned_count=self.provisioned_count,
                verified_count=self.verified_count,
                failed_count=self.failed_count,
            ),
            config=dict(self.config),
        )


class CandidateModel(_WireModel):
    mac: str
    state: DeviceState = DeviceState.DISCOVERED
    ip: str = ""
    rssi: int = 0
    firmware_version: str = ""
    in_allowlist: bool = False
    retry_count: int = 0
    error_message: Optional[str] = None
    container_id: Optional[str] = None
    discovered_at: Optional[datetime] = None
    provisioned_at: Optional[datetime] = None
    verified_at: Optional[datetime] = None

    @field_validator("mac")
    @classmethod
    def _normalize_mac(cls, value: str) -> str:
        return normalize_mac(value)

    @field_validator("discovered_at", "provisioned_at", "verified_at")
    @classmethod
    def _to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return as_utc(value) if value is not None else None

    def to_domain(self, at: Optional[datetime] = None) -> DeviceCandidate:
        seen = self.discovered_at or at or utcnow()
        return DeviceCandidate(
            mac=self.mac,
            state=self.state,
            discovered_at=seen,
            state_changed_at=at or seen,
            ip=self.ip,
            rssi=self.rssi,
            firmware_version=self.firmware_version,
            in_allowlist=self.in_allowlist,
            retry_count=self.retry_count,
            error_message=self.error_message,
            container_id=self.container_id,
            provisioned_at=self.provisioned_at,
            verified_at=self.verified_at,
        )


class SessionUpdatedPayload(_WireModel):
    session: SessionModel

    @classmethod
    def parse(cls, payload: Dict[str, Any]) -> "SessionUpdatedPayload":
        if "session" in payload:
            return cls.model_validate(payload)
        return cls(session=SessionModel.model_validate(payload))


class DeviceDiscoveredPayload(CandidateModel):
    pass


class DeviceStateChangedPayload(_WireModel):
    mac: str
    old_state: Optional[DeviceState] = Field(None, validation_alias=AliasChoices("old_state", "previous_state"))
    new_state: DeviceState
    progress: Optional[int] = None
    error: Optional[str] = None
    container_id: Optional[str] = None

    @field_validator("mac")
    @classmethod
    def _normalize_mac(cls, value: str) -> str:
        return normalize_mac(value)


class DeviceRemovedPayload(_WireModel):
    mac: str
    reason: Optional[str] = None

    @field_validator("mac")
    @classmethod
    def _normalize_mac(cls, value: str) -> str:
        return normalize_mac(value)


class NetworkStatusPayload(_WireModel):
    ssid: str
    is_active: bool
    connected_devices: int = 0

    def to_domain(self) -> NetworkStatus:
        return NetworkStatus(ssid=self.ssid, is_active=self.is_active, connected_devices=self.connected_devices)


class ErrorPayload(_WireModel):
    code: str = "UNKNOWN"
    message: str = ""
    retryable: bool = False


class ConnectionEstablishedPayload(_WireModel):
    message: str = ""
    session_id: Optional[str] = None


class HeartbeatPayload(_WireModel):
    pass


EventPayload = Union[
    SessionUpdatedPayload,
    DeviceDiscoveredPayload,
    DeviceStateChangedPayload,
    DeviceRemovedPayload,
    NetworkStatusPayload,
    ErrorPayload,
    ConnectionEstablishedPayload,
    HeartbeatPayload,
]

_PAYLOAD_MODELS: Dict[EventType, Type[_WireModel]] = {
    EventType.DEVICE_DISCOVERED: DeviceDiscoveredPayload,
    EventType.DEVICE_STATE_CHANGED: DeviceStateChangedPayload,
    EventType.DEVICE_REMOVED: DeviceRemovedPayload,
    EventType.NETWORK_STATUS: NetworkStatusPayload,
    EventType.ERROR: ErrorPayload,
    EventType.CONNECTION_ESTABLISHED: ConnectionEstablishedPayload,
    EventType.HEARTBEAT: HeartbeatPayload,
}


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    payload: EventPayload
    timestamp: datetime
    session_id: Optional[str] = None


def resolve_event_type(name: Optional[str]) -> EventType:
    if not name:
        raise MalformedEvent("event has no type")
    try:
        return EVENT_TYPE_ALIASES[name]
    except KeyError:
        raise MalformedEvent(f"unknown event type {name!r}") from None


def build_event(
    event_type: EventType,
    payload: Optional[Dict[str, Any]] = None,
    *,
    timestamp: Optional[datetime] = None,
    session_id: Optional[str] = None,
) -> StreamEvent:
    data = payload or {}
    try:
        if event_type is EventType.SESSION_UPDATED:
            model: EventPayload = SessionUpdatedPayload.parse(data)
        else:
            model = _PAYLOAD_MODELS[event_type].model_validate(data)  # type: ignore[assignment]
    except ValidationError as exc:
        raise MalformedEvent(f"invalid {event_type.value} payload: {exc.error_count()} error(s)") from exc
    return StreamEvent(
        type=event_type,
        payload=model,
        timestamp=as_utc(timestamp) if timestamp else utcnow(),
        session_id=session_id,
    )


def parse_event(event_name: Optional[str], data: str) -> StreamEvent:
    """Decode one SSE frame into a typed event.

    The frame's JSON body may be a full envelope (``{"type", "payload", ...}``)
    or a bare payload whose type comes from the SSE ``event:`` field.
    """

    try:
        body = json.loads(data) if data.strip() else {}
    except json.JSONDecodeError as exc:
        raise MalformedEvent(f"frame data is not JSON: {exc.msg}") from exc
    if body is None:
        body = {}
    if not isinstance(body, dict):
        raise MalformedEvent("frame data is not an object")

    if "type" in body and "payload" in body:
        event_type = resolve_event_type(body.get("type"))
        payload = body.get("payload") or {}
        if not isinstance(payload, dict):
            raise MalformedEvent("envelope payload is not an object")
        timestamp = _parse_timestamp(body.get("timestamp"))
        return build_event(event_type, payload, timestamp=timestamp, session_id=body.get("session_id"))

    if event_name in (None, "", "message"):
        event_type = resolve_event_type(body.get("type"))
    else:
        event_type = resolve_event_type(event_name)
    return build_event(event_type, body)


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return as_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        logger.debug("Ignoring unparseable event timestamp %r", value)
        return None


class RecoverableSessionsModel(_WireModel):
    sessions: List[SessionModel] = Field(default_factory=list)


class SessionDataModel(_WireModel):
    session: SessionModel
    devices: List[CandidateModel] = Field(default_factory=list)
    timeout_remaining: Optional[str] = None
    network_status: Optional[NetworkStatusPayload] = None


class DeviceOperationModel(_WireModel):
    mac: str
    state: Optional[DeviceState] = None
    message: str = ""


class ProvisionAllModel(_WireModel):
    initiated_count: int = 0
    skipped_count: int = 0
    message: str = ""


__all__ = [
    "EVENT_TYPE_ALIASES",
    "CandidateModel",
    "ConnectionEstablishedPayload",
    "DeviceDiscoveredPayload",
    "DeviceOperationModel",
    "DeviceRemovedPayload",
    "DeviceStateChangedPayload",
    "ErrorPayload",
    "HeartbeatPayload",
    "MalformedEvent",
    "NetworkStatusPayload",
    "ProvisionAllModel",
    "RecoverableSessionsModel",
    "SessionDataModel",
    "SessionModel",
    "SessionUpdatedPayload",
    "StreamEvent",
    "build_event",
    "parse_event",
    "resolve_event_type",
]
