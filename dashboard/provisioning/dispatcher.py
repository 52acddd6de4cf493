"""Routes stream events into the mirrored session and device state.

The transition logic lives in :func:`apply_event`, a pure function of the current
snapshot and one event. :class:`EventDispatcher` owns the only mutable reference
to the snapshot and commits each outcome: it swaps the snapshot, writes the
session summary to the store and publishes notices to subscribers.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Tuple

from . import device_machine, session_machine
from .backend.schemas import (
    DeviceDiscoveredPayload,
    DeviceRemovedPayload,
    DeviceStateChangedPayload,
    ErrorPayload,
    NetworkStatusPayload,
    SessionModel,
    SessionUpdatedPayload,
    StreamEvent,
)
from .pending import PendingCommands
from .state import (
    CommandKind,
    ConnectionState,
    Counters,
    DeviceCandidate,
    DeviceState,
    EngineEvent,
    EventType,
    RecoverableSessionRecord,
    Session,
    SessionSnapshot,
    SessionState,
    next_timestamp,
)
from .store import SessionStore

logger = logging.getLogger(__name__)

Publisher = Callable[[EngineEvent], Awaitable[None]]

_PROVISIONED_OR_LATER = frozenset({DeviceState.PROVISIONED, DeviceState.VERIFYING, DeviceState.VERIFIED})


@dataclass(frozen=True)
class DispatchOutcome:
    snapshot: SessionSnapshot
    accepted: bool = False
    notices: Tuple[EngineEvent, ...] = ()
    persist: Optional[RecoverableSessionRecord] = None
    purge: Optional[str] = None
    resolved: Tuple[Tuple[CommandKind, Optional[str]], ...] = ()
    resolve_devices: Tuple[str, ...] = ()
    clear_pending: bool = False


@dataclass(frozen=True)
class _Context:
    retry_macs: FrozenSet[str] = frozenset()
    resync_macs: FrozenSet[str] = field(default_factory=frozenset)
    adopt_session: bool = False


def derive_counters(devices: Dict[str, DeviceCandidate]) -> Counters:
    provisioned = verified = failed = 0
    for device in devices.values():
        if device.state in _PROVISIONED_OR_LATER:
            provisioned += 1
        if device.state is DeviceState.VERIFIED:
            verified += 1
        if device.state is DeviceState.FAILED:
            failed += 1
    return Counters(
        device_count=len(devices),
        provisioned_count=provisioned,
        verified_count=verified,
        failed_count=failed,
    )


def session_to_dict(session: Session) -> Dict[str, Any]:
    return {
        "id": session.id,
        "state": session.state.value,
        "target_ssid": session.target_ssid,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "expires_at": session.expires_at.isoformat() if session.expires_at else None,
        "device_count": session.counters.device_count,
        "provisioned_count": session.counters.provisioned_count,
        "verified_count": session.counters.verified_count,
        "failed_count": session.counters.failed_count,
    }


def device_to_dict(device: DeviceCandidate) -> Dict[str, Any]:
    return {
        "mac": device.mac,
        "ip": device.ip,
        "rssi": device.rssi,
        "firmware_version": device.firmware_version,
        "state": device.state.value,
        "in_allowlist": device.in_allowlist,
        "retry_count": device.retry_count,
        "error_message": device.error_message,
        "container_id": device.container_id,
        "progress": device.progress,
        "discovered_at": device.discovered_at.isoformat(),
        "state_changed_at": device.state_changed_at.isoformat(),
    }


def _touch(snapshot: SessionSnapshot, devices: Dict[str, DeviceCandidate], at: datetime) -> SessionSnapshot:
    """Apply a device-set change, bumping ``updated_at`` and lifting counters."""

    session = snapshot.session
    if session is not None:
        session = replace(
            session,
            updated_at=next_timestamp(session.updated_at, at),
            counters=session.counters.merged(derive_counters(devices)),
        )
    return replace(snapshot, session=session, devices=MappingProxyType(dict(devices)))


def apply_event(
    snapshot: SessionSnapshot,
    event: StreamEvent,
    *,
    retry_macs: FrozenSet[str] = frozenset(),
    resync_macs: FrozenSet[str] = frozenset(),
    adopt_session: bool = False,
) -> DispatchOutcome:
    """Compute the next snapshot for ``event`` without side effects.

    ``retry_macs`` are devices with an accepted, unconfirmed retry command;
    ``resync_macs`` are devices already replayed on the current connection.
    ``adopt_session`` takes a session update as authoritative even outside a
    resync window, as for a start or resume acknowledgment.
    """

    ctx = _Context(retry_macs=retry_macs, resync_macs=resync_macs, adopt_session=adopt_session)
    handler = _HANDLERS.get(event.type)
    if handler is None:
        logger.warning("Dropping event with unhandled type %s", event.type)
        return DispatchOutcome(snapshot=snapshot)
    return handler(snapshot, event, ctx)


def _on_session_updated(snapshot: SessionSnapshot, event: StreamEvent, ctx: _Context) -> DispatchOutcome:
    assert isinstance(event.payload, SessionUpdatedPayload)
    incoming = event.payload.session.to_domain()
    current = snapshot.session

    if current is not None and current.id != incoming.id:
        if current.state is not SessionState.CLOSED and not snapshot.resyncing:
            logger.warning("Ignoring update for session %s while mirroring %s", incoming.id, current.id)
            return DispatchOutcome(snapshot=snapshot)
        current = None

    devices = dict(snapshot.devices)
    if current is None:
        if snapshot.session is not None and snapshot.session.id != incoming.id:
            devices = {}
        state = incoming.state
        counters = incoming.counters.merged(derive_counters(devices))
        previous_updated = None
    elif snapshot.resyncing or ctx.adopt_session:
        if current.state is SessionState.CLOSED and incoming.state is not SessionState.CLOSED:
            logger.warning("Ignoring resync of closed session %s to %s", current.id, incoming.state.value)
            return DispatchOutcome(snapshot=snapshot)
        state = incoming.state
        previous_updated = current.updated_at
        if snapshot.resyncing:
            replayed = {mac: device for mac, device in devices.items() if mac in ctx.resync_macs}
            counters = incoming.counters.merged(derive_counters(replayed))
            logger.info(
                "Resyncing session %s: state=%s replayed=%d", current.id, state.value, len(replayed)
            )
        else:
            counters = current.counters.merged(incoming.counters).merged(derive_counters(devices))
            logger.info("Adopting acknowledged state %s for session %s", state.value, current.id)
    else:
        if incoming.state is not current.state and not session_machine.can_transition(current.state, incoming.state):
            logger.warning(
                "Rejected session transition %s -> %s for %s",
                current.state.value,
                incoming.state.value,
                current.id,
            )
            return DispatchOutcome(snapshot=snapshot)
        state = incoming.state
        counters = current.counters.merged(incoming.counters).merged(derive_counters(devices))
        previous_updated = current.updated_at

    session = replace(
        incoming,
        state=state,
        counters=counters,
        created_at=current.created_at if current is not None else incoming.created_at,
        updated_at=next_timestamp(previous_updated, incoming.updated_at),
    )
    # The window stays open for the device burst that follows.
    next_snapshot = replace(
        snapshot,
        session=session,
        devices=MappingProxyType(devices),
        resyncing=snapshot.resyncing and session.state is not SessionState.CLOSED,
    )

    previous_state = current.state.value if current is not None else None
    notice = EngineEvent(
        type="session_updated",
        data={"session": session_to_dict(session), "previous_state": previous_state},
        session_state=session.state,
    )
    if session.state is SessionState.CLOSED:
        logger.info("Session %s closed", session.id)
        return DispatchOutcome(
            snapshot=next_snapshot,
            accepted=True,
            notices=(notice,),
            purge=session.id,
            clear_pending=True,
        )
    resolved: Tuple[Tuple[CommandKind, Optional[str]], ...] = ()
    if previous_state != session.state.value:
        resolved = _session_resolutions(session.state)
    return DispatchOutcome(
        snapshot=next_snapshot,
        accepted=True,
        notices=(notice,),
        persist=RecoverableSessionRecord.from_session(session),
        resolved=resolved,
    )


def _session_resolutions(state: SessionState) -> Tuple[Tuple[CommandKind, Optional[str]], ...]:
    if state is SessionState.PAUSED:
        return ((CommandKind.PAUSE, None),)
    if state is SessionState.ACTIVE:
        return ((CommandKind.RESUME, None), (CommandKind.START, None))
    if state is SessionState.CLOSING:
        return ((CommandKind.STOP, None),)
    if state is SessionState.DISCOVERING:
        return ((CommandKind.START, None),)
    return ()


def _on_device_discovered(snapshot: SessionSnapshot, event: StreamEvent, ctx: _Context) -> DispatchOutcome:
    assert isinstance(event.payload, DeviceDiscoveredPayload)
    payload = event.payload
    existing = snapshot.devices.get(payload.mac)
    replaying = snapshot.resyncing and payload.mac not in ctx.resync_macs
    if existing is not None and not replaying:
        logger.debug("Device %s already tracked; discovery ignored", payload.mac)
        return DispatchOutcome(snapshot=snapshot)

    device = payload.to_domain(at=event.timestamp)
    if not replaying:
        device = replace(device, state=device_machine.INITIAL_STATE)
    if existing is not None:
        device = _overlay_replayed(existing, device)

    devices = dict(snapshot.devices)
    devices[device.mac] = device
    return DispatchOutcome(
        snapshot=_touch(snapshot, devices, event.timestamp),
        accepted=True,
        notices=(EngineEvent(type="device_discovered", data={"device": device_to_dict(device)}),),
    )


def _overlay_replayed(existing: DeviceCandidate, replayed: DeviceCandidate) -> DeviceCandidate:
    """Lay a replayed record over the mirrored one without losing what the replay omits."""

    same_state = replayed.state is existing.state
    return replace(
        replayed,
        discovered_at=existing.discovered_at,
        state_changed_at=existing.state_changed_at if same_state else replayed.state_changed_at,
        retry_count=max(existing.retry_count, replayed.retry_count),
        error_message=replayed.error_message or (existing.error_message if same_state else None),
        container_id=replayed.container_id or existing.container_id,
        provisioned_at=replayed.provisioned_at or existing.provisioned_at,
        verified_at=replayed.verified_at or existing.verified_at,
        progress=existing.progress if same_state else None,
    )


def _on_device_state_changed(snapshot: SessionSnapshot, event: StreamEvent, ctx: _Context) -> DispatchOutcome:
    assert isinstance(event.payload, DeviceStateChangedPayload)
    payload = event.payload
    current = snapshot.devices.get(payload.mac)
    new_state = payload.new_state
    resolved: Tuple[Tuple[CommandKind, Optional[str]], ...] = ()

    if current is None:
        logger.info("State change for untracked device %s; adopting %s", payload.mac, new_state.value)
        old_state = payload.old_state
        device = DeviceCandidate(
            mac=payload.mac,
            state=new_state,
            discovered_at=event.timestamp,
            state_changed_at=event.timestamp,
        )
    elif current.state is new_state:
        if payload.progress is None or payload.progress == current.progress:
            logger.debug("Duplicate state %s for %s absorbed", new_state.value, payload.mac)
            return DispatchOutcome(snapshot=snapshot)
        devices = dict(snapshot.devices)
        devices[payload.mac] = replace(current, progress=payload.progress)
        return DispatchOutcome(snapshot=_touch(snapshot, devices, event.timestamp), accepted=True)
    else:
        old_state = current.state
        retry_count = current.retry_count
        if device_machine.is_retry_edge(current.state, new_state):
            # A replayed retry happened while the stream was down.
            replaying = snapshot.resyncing and payload.mac not in ctx.resync_macs
            if payload.mac not in ctx.retry_macs and not replaying:
                logger.warning("Rejected %s -> %s for %s without a retry command", old_state.value, new_state.value, payload.mac)
                return DispatchOutcome(snapshot=snapshot)
            retry_count += 1
            resolved = ((CommandKind.RETRY, payload.mac),)
        elif not device_machine.can_transition(current.state, new_state):
            logger.info(
                "Device %s jumped %s -> %s; adopting as resync",
                payload.mac,
                current.state.value,
                new_state.value,
            )
        device = replace(current, state=new_state, retry_count=retry_count)

    device = replace(
        device,
        state_changed_at=event.timestamp,
        progress=payload.progress,
        error_message=payload.error if new_state is DeviceState.FAILED else None,
    )
    if new_state is DeviceState.PROVISIONED:
        device = replace(device, provisioned_at=event.timestamp)
    elif new_state is DeviceState.VERIFIED:
        device = replace(device, verified_at=event.timestamp)
    if payload.container_id:
        device = replace(device, container_id=payload.container_id)
    if new_state is not DeviceState.DISCOVERED:
        resolved = resolved + ((CommandKind.PROVISION, payload.mac),)

    devices = dict(snapshot.devices)
    devices[device.mac] = device
    notice = EngineEvent(
        type="device_state_changed",
        data={
            "mac": device.mac,
            "old_state": old_state.value if old_state else None,
            "new_state": new_state.value,
            "error": device.error_message,
            "device": device_to_dict(device),
        },
        error=device.error_message,
    )
    return DispatchOutcome(
        snapshot=_touch(snapshot, devices, event.timestamp),
        accepted=True,
        notices=(notice,),
        resolved=resolved,
    )


def _on_device_removed(snapshot: SessionSnapshot, event: StreamEvent, ctx: _Context) -> DispatchOutcome:
    assert isinstance(event.payload, DeviceRemovedPayload)
    mac = event.payload.mac
    current = snapshot.devices.get(mac)
    if current is None:
        return DispatchOutcome(snapshot=snapshot, resolve_devices=(mac,))
    if not device_machine.can_skip(current.state):
        logger.warning("Ignoring removal of %s in state %s", mac, current.state.value)
        return DispatchOutcome(snapshot=snapshot)
    devices = dict(snapshot.devices)
    del devices[mac]
    next_snapshot = replace(snapshot, devices=MappingProxyType(devices))
    if next_snapshot.session is not None:
        next_snapshot = replace(
            next_snapshot,
            session=replace(
                next_snapshot.session,
                updated_at=next_timestamp(next_snapshot.session.updated_at, event.timestamp),
            ),
        )
    return DispatchOutcome(
        snapshot=next_snapshot,
        accepted=True,
        notices=(EngineEvent(type="device_removed", data={"mac": mac, "reason": event.payload.reason}),),
        resolve_devices=(mac,),
    )


def _on_network_status(snapshot: SessionSnapshot, event: StreamEvent, ctx: _Context) -> DispatchOutcome:
    assert isinstance(event.payload, NetworkStatusPayload)
    network = event.payload.to_domain()
    if network == snapshot.network:
        return DispatchOutcome(snapshot=snapshot)
    session = snapshot.session
    if session is not None:
        session = replace(session, updated_at=next_timestamp(session.updated_at, event.timestamp))
    return DispatchOutcome(
        snapshot=replace(snapshot, session=session, network=network),
        accepted=True,
        notices=(
            EngineEvent(
                type="network_status",
                data={
                    "ssid": network.ssid,
                    "is_active": network.is_active,
                    "connected_devices": network.connected_devices,
                },
            ),
        ),
    )


def _on_error(snapshot: SessionSnapshot, event: StreamEvent, ctx: _Context) -> DispatchOutcome:
    assert isinstance(event.payload, ErrorPayload)
    payload = event.payload
    logger.warning("Orchestrator reported %s: %s", payload.code, payload.message)
    return DispatchOutcome(
        snapshot=snapshot,
        notices=(
            EngineEvent(
                type="error",
                data={"code": payload.code, "message": payload.message, "retryable": payload.retryable},
                error=payload.message or payload.code,
            ),
        ),
    )


def _on_connection_noise(snapshot: SessionSnapshot, event: StreamEvent, ctx: _Context) -> DispatchOutcome:
    logger.debug("Stream %s", event.type.value)
    return DispatchOutcome(snapshot=snapshot)


def close_resync(
    snapshot: SessionSnapshot,
    *,
    resync_macs: FrozenSet[str],
    reported: Counters,
    at: datetime,
) -> DispatchOutcome:
    """End a resync window once its device burst is over.

    Devices the orchestrator did not replay are dropped and the counters are
    rebuilt from ``reported`` and the surviving devices, so they may move down.
    """

    devices = {mac: device for mac, device in snapshot.devices.items() if mac in resync_macs}
    dropped = tuple(sorted(mac for mac in snapshot.devices if mac not in resync_macs))
    next_snapshot = replace(snapshot, devices=MappingProxyType(devices), resyncing=False)
    session = snapshot.session
    if session is None:
        return DispatchOutcome(snapshot=next_snapshot)
    counters = reported.merged(derive_counters(devices))
    if not dropped and counters == session.counters:
        return DispatchOutcome(snapshot=next_snapshot)

    session = replace(session, counters=counters, updated_at=next_timestamp(session.updated_at, at))
    logger.info("Resync of %s complete; dropped %d device(s) not replayed", session.id, len(dropped))
    notices = tuple(
        EngineEvent(type="device_removed", data={"mac": mac, "reason": "not_replayed"}) for mac in dropped
    )
    notices += (
        EngineEvent(
            type="session_updated",
            data={"session": session_to_dict(session), "previous_state": session.state.value},
        ),
    )
    return DispatchOutcome(
        snapshot=replace(next_snapshot, session=session),
        accepted=True,
        notices=notices,
        persist=RecoverableSessionRecord.from_session(session),
        resolve_devices=dropped,
    )


_REPLAY_EVENTS = frozenset({EventType.DEVICE_DISCOVERED, EventType.DEVICE_STATE_CHANGED})

_HANDLERS: Dict[EventType, Callable[[SessionSnapshot, StreamEvent, _Context], DispatchOutcome]] = {
    EventType.SESSION_UPDATED: _on_session_updated,
    EventType.DEVICE_DISCOVERED: _on_device_discovered,
    EventType.DEVICE_STATE_CHANGED: _on_device_state_changed,
    EventType.DEVICE_REMOVED: _on_device_removed,
    EventType.NETWORK_STATUS: _on_network_status,
    EventType.ERROR: _on_error,
    EventType.CONNECTION_ESTABLISHED: _on_connection_noise,
    EventType.HEARTBEAT: _on_connection_noise,
}


async def _discard(event: EngineEvent) -> None:
    return None


class EventDispatcher:
    """Single writer of the mirrored session/device state.

    A resync window opens on every (re)connect. The orchestrator replays the
    session and then a burst of device events; the window closes at the first
    other event after that session update, dropping devices nobody replayed.
    """

    def __init__(
        self,
        store: SessionStore,
        *,
        pending: Optional[PendingCommands] = None,
        publish: Optional[Publisher] = None,
    ) -> None:
        self.store = store
        self.pending = pending if pending is not None else PendingCommands()
        self._publish = publish or _discard
        self._snapshot = SessionSnapshot()
        self._resync_macs: set[str] = set()
        # Counters reported by the window's session update; None until it arrives.
        self._resync_reported: Optional[Counters] = None

    @property
    def snapshot(self) -> SessionSnapshot:
        return self._snapshot

    def reset(self) -> None:
        self._snapshot = replace(SessionSnapshot(), connection=self._snapshot.connection)
        self._resync_macs.clear()
        self._resync_reported = None
        self.pending.clear()

    async def handle(self, event: StreamEvent, *, adopt_session: bool = False) -> DispatchOutcome:
        if self._burst_open and event.type not in _REPLAY_EVENTS:
            await self._close_resync(event.timestamp)
        retry_macs = frozenset(
            entry.mac for entry in self.pending.snapshot() if entry.kind is CommandKind.RETRY and entry.mac
        )
        outcome = apply_event(
            self._snapshot,
            event,
            retry_macs=retry_macs,
            resync_macs=frozenset(self._resync_macs),
            adopt_session=adopt_session,
        )
        await self._commit(outcome, event, adopt_session=adopt_session)
        return outcome

    async def seed(self, session: SessionModel) -> DispatchOutcome:
        """Mirror a session returned by a start/resume acknowledgment.

        Runs through the same path as a stream event so the mirror and the
        store keep a single writer. Any resync window is left for the stream
        to finish.
        """

        if self._snapshot.session is not None and self._snapshot.session.id != session.id:
            self.reset()
        event = StreamEvent(
            type=EventType.SESSION_UPDATED,
            payload=SessionUpdatedPayload(session=session),
            timestamp=session.updated_at or next_timestamp(None),
            session_id=session.id,
        )
        return await self.handle(event, adopt_session=True)

    async def connection_changed(self, state: ConnectionState, reason: Optional[str] = None) -> None:
        snapshot = replace(self._snapshot, connection=state)
        if state is ConnectionState.CONNECTED:
            snapshot = replace(snapshot, resyncing=True)
            self._resync_macs.clear()
            self._resync_reported = None
        self._snapshot = snapshot
        data: Dict[str, Any] = {"state": state.value}
        if reason:
            data["reason"] = reason
        await self._publish(
            EngineEvent(
                type="connection",
                data=data,
                session_state=snapshot.session.state if snapshot.session else None,
                connection=state,
                error=reason if state is ConnectionState.ERROR else None,
            )
        )

    @property
    def _burst_open(self) -> bool:
        return self._snapshot.resyncing and self._resync_reported is not None

    async def _close_resync(self, at: datetime) -> None:
        assert self._resync_reported is not None
        outcome = close_resync(
            self._snapshot,
            resync_macs=frozenset(self._resync_macs),
            reported=self._resync_reported,
            at=at,
        )
        self._resync_macs.clear()
        self._resync_reported = None
        await self._commit(outcome)

    async def _commit(
        self,
        outcome: DispatchOutcome,
        event: Optional[StreamEvent] = None,
        *,
        adopt_session: bool = False,
    ) -> None:
        replaying = self._snapshot.resyncing
        self._snapshot = outcome.snapshot
        if event is not None and replaying:
            if event.type in _REPLAY_EVENTS:
                self._resync_macs.add(getattr(event.payload, "mac"))
            elif (
                event.type is EventType.SESSION_UPDATED
                and outcome.accepted
                and self._snapshot.resyncing
                and not adopt_session
            ):
                assert self._snapshot.session is not None
                self._resync_reported = self._snapshot.session.counters
        if outcome.clear_pending:
            self.pending.clear()
        for kind, mac in outcome.resolved:
            self.pending.resolve(kind, mac)
        for mac in outcome.resolve_devices:
            self.pending.resolve_device(mac)

        if outcome.persist is not None:
            await self.store.put(outcome.persist)
        if outcome.purge is not None:
            await self.store.delete(outcome.purge)

        for notice in outcome.notices:
            if notice.session_state is None and self._snapshot.session is not None:
                notice.session_state = self._snapshot.session.state
            notice.connection = self._snapshot.connection
            await self._publish(notice)


__all__ = [
    "DispatchOutcome",
    "EventDispatcher",
    "apply_event",
    "close_resync",
    "derive_counters",
    "device_to_dict",
    "session_to_dict",
]
