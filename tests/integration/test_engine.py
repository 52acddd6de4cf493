from __future__ import annotations

import asyncio
from typing import List

import httpx
import pytest

from conftest import (
    MAC_1,
    MAC_2,
    SESSION_ID,
    discovered_event,
    error_envelope,
    session_event,
    session_payload,
    sse_frame,
    state_event,
    ts,
)
from provisioning.errors import CommandRejected, StaleSessionError
from provisioning.session_manager import build_engine
from provisioning.state import (
    CommandKind,
    ConnectionState,
    DeviceState,
    EngineEvent,
    RecoverableSessionRecord,
    SessionState,
)

BATCH = "/api/v1/provisioning/batch"
SESSIONS = "/api/v1/provisioning/sessions"


def _engine(settings, orchestrator):
    settings = settings.model_copy(update={"reconnect_initial_delay_s": 0.01, "reconnect_max_delay_s": 0.05})
    orchestrator.on("GET", f"{SESSIONS}/recoverable", {"sessions": []})
    return build_engine(settings, transport=orchestrator.transport())


def _drain(queue: "asyncio.Queue[EngineEvent]") -> List[EngineEvent]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


def _transition(mac: str, old: str, new: str, **extra) -> str:
    payload = {"mac": mac, "old_state": old, "new_state": new}
    payload.update(extra)
    return sse_frame("device.state_changed", payload)


def _discovered(mac: str, **extra) -> str:
    payload = {"mac": mac, "ip": "192.168.4.20", "rssi": -58, "firmware_version": "1.4.2", "in_allowlist": True}
    payload.update(extra)
    return sse_frame("device.discovered", payload)


def _session(state: str, **counters) -> str:
    return sse_frame("session.status", {"session": session_payload(state, **counters)})


@pytest.mark.asyncio
async def test_full_session_lifecycle(settings, orchestrator) -> None:
    orchestrator.on("POST", f"{BATCH}/start", {"session": session_payload("discovering")})
    orchestrator.streams = [
        _session("active")
        + _discovered(MAC_1)
        + _discovered(MAC_2)
        + _transition(MAC_1, "discovered", "provisioning")
        + _transition(MAC_1, "discovered", "provisioning")
        + _transition(MAC_1, "provisioning", "provisioned")
        + _transition(MAC_1, "provisioned", "verifying")
        + _transition(MAC_1, "verifying", "verified", container_id="ctr-1")
        + _transition(MAC_2, "discovered", "provisioning")
        + _transition(MAC_2, "provisioning", "failed", error="association rejected")
        + _session("closing")
        + _session("closed")
    ]
    engine = _engine(settings, orchestrator)
    await engine.start()
    queue = engine.register_ui()

    session = await engine.start_session("Lab-5G", "password123")
    assert session.id == SESSION_ID
    await asyncio.wait_for(engine.stream.wait(), timeout=5)

    snapshot = engine.snapshot
    assert snapshot.session.state is SessionState.CLOSED
    assert snapshot.device(MAC_1).state is DeviceState.VERIFIED
    assert snapshot.device(MAC_1).container_id == "ctr-1"
    assert snapshot.device(MAC_2).state is DeviceState.FAILED
    assert snapshot.device(MAC_2).error_message == "association rejected"
    assert snapshot.session.counters.verified_count == 1
    assert snapshot.session.counters.failed_count == 1
    assert await engine.store.get(SESSION_ID) is None
    assert len(engine.pending) == 0
    assert engine.connection_state is ConnectionState.DISCONNECTED
    assert orchestrator.stream_connects == 1

    events = _drain(queue)
    types = [event.type for event in events]
    assert types[0] == "session_updated"
    assert types.count("device_state_changed") == 6
    assert events[-1].type == "connection"
    assert events[-1].connection is ConnectionState.DISCONNECTED
    failed = [e for e in events if e.type == "device_state_changed" and e.data["new_state"] == "failed"]
    assert failed[0].error == "association rejected"

    with pytest.raises(CommandRejected) as info:
        await engine.reconnect()
    assert info.value.code == "SESSION_NOT_ACTIVE"
    await engine.stop()


@pytest.mark.asyncio
async def test_reconnect_replays_state(settings, orchestrator) -> None:
    orchestrator.on("POST", f"{BATCH}/start", {"session": session_payload("discovering")})
    orchestrator.streams = [
        _session("active", device_count=2, verified_count=0)
        + _discovered(MAC_1)
        + _discovered(MAC_2)
        + _transition(MAC_1, "discovered", "provisioning")
        + _transition(MAC_2, "discovered", "provisioning"),
        _discovered(MAC_1, state="verified")
        + _discovered(MAC_2, state="failed", error_message="wrong psk")
        + _session("active", device_count=2, verified_count=1, failed_count=1)
        + _session("closing")
        + _session("closed"),
    ]
    engine = _engine(settings, orchestrator)
    await engine.start()
    queue = engine.register_ui()

    await engine.start_session("Lab-5G", "password123")
    await asyncio.wait_for(engine.stream.wait(), timeout=5)

    snapshot = engine.snapshot
    assert orchestrator.stream_connects == 2
    assert snapshot.device(MAC_1).state is DeviceState.VERIFIED
    assert snapshot.device(MAC_2).state is DeviceState.FAILED
    assert snapshot.device(MAC_2).error_message == "wrong psk"
    assert snapshot.session.counters.verified_count == 1
    assert snapshot.session.counters.failed_count == 1
    states = [e.connection for e in _drain(queue) if e.type == "connection"]
    assert ConnectionState.RECONNECTING in states
    assert states.count(ConnectionState.CONNECTED) == 2
    await engine.stop()


@pytest.mark.asyncio
async def test_reconnect_in_replay_order_keeps_device_details(settings, orchestrator) -> None:
    orchestrator.on("POST", f"{BATCH}/start", {"session": session_payload("discovering")})
    orchestrator.streams = [
        _session("active")
        + _discovered(MAC_1)
        + _transition(MAC_1, "discovered", "provisioning")
        + _transition(MAC_1, "provisioning", "failed", error="timeout", container_id="ctr-7"),
        _session("active", device_count=1, failed_count=1)
        + _transition(MAC_1, "provisioning", "failed", error="association rejected")
        + sse_frame("connection.heartbeat", {})
        + _session("closing")
        + _session("closed"),
    ]
    engine = _engine(settings, orchestrator)
    await engine.start()

    await engine.start_session("Lab-5G", "password123")
    await asyncio.wait_for(engine.stream.wait(), timeout=5)

    assert orchestrator.stream_connects == 2
    device = engine.snapshot.device(MAC_1)
    assert device.state is DeviceState.FAILED
    assert device.in_allowlist
    assert device.ip == "192.168.4.20"
    assert device.firmware_version == "1.4.2"
    assert device.container_id == "ctr-7"
    assert engine.snapshot.session.counters.failed_count == 1
    await engine.stop()


@pytest.mark.asyncio
async def test_retry_round_trip_through_engine(settings, orchestrator) -> None:
    orchestrator.on("POST", f"{BATCH}/{SESSION_ID}/devices/{MAC_1}/retry", {"mac": MAC_1, "state": "provisioning"})
    engine = _engine(settings, orchestrator)
    assert engine.dispatcher.pending is engine.pending

    for event in (
        session_event(SessionState.DISCOVERING),
        session_event(SessionState.ACTIVE),
        discovered_event(MAC_1),
        state_event(MAC_1, DeviceState.DISCOVERED, DeviceState.PROVISIONING),
        state_event(MAC_1, DeviceState.PROVISIONING, DeviceState.FAILED, error="timeout"),
    ):
        await engine.dispatcher.handle(event)

    await engine.retry(MAC_1)
    assert engine.pending.has(CommandKind.RETRY, MAC_1)
    await engine.dispatcher.handle(state_event(MAC_1, DeviceState.FAILED, DeviceState.PROVISIONING))

    device = engine.snapshot.device(MAC_1)
    assert device.state is DeviceState.PROVISIONING
    assert device.retry_count == 1
    assert len(engine.pending) == 0

    await engine.dispatcher.handle(state_event(MAC_1, DeviceState.PROVISIONING, DeviceState.FAILED, error="timeout"))
    await engine.retry(MAC_1)
    await engine.dispatcher.handle(state_event(MAC_1, DeviceState.FAILED, DeviceState.PROVISIONING))

    assert engine.snapshot.device(MAC_1).retry_count == 2
    assert len(orchestrator.command_requests()) == 2
    await engine.stop()


@pytest.mark.asyncio
async def test_resume_of_closed_session_is_reported_as_stale(settings, orchestrator) -> None:
    engine = _engine(settings, orchestrator)
    await engine.store.put(
        RecoverableSessionRecord(id=SESSION_ID, state=SessionState.ACTIVE, target_ssid="Lab-5G", updated_at=ts(1))
    )
    orchestrator.on(
        "POST",
        f"{SESSIONS}/{SESSION_ID}/resume",
        {"session": session_payload("closed", updated=2), "devices": []},
    )
    await engine.start()
    queue = engine.register_ui()

    with pytest.raises(StaleSessionError):
        await engine.resume_recoverable(SESSION_ID)

    notice = queue.get_nowait()
    assert notice.type == "recovery_failed"
    assert notice.data == {"session_id": SESSION_ID, "reason": "SESSION_ALREADY_CLOSED"}
    assert engine.snapshot.session is None
    assert await engine.store.get(SESSION_ID) is None
    assert orchestrator.stream_connects == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_start_rejection_does_not_attach(settings, orchestrator) -> None:
    orchestrator.on(
        "POST",
        f"{BATCH}/start",
        httpx.Response(409, json=error_envelope("SESSION_ALREADY_ACTIVE", "another session is running")),
    )
    engine = _engine(settings, orchestrator)
    await engine.start()

    with pytest.raises(CommandRejected):
        await engine.start_session("Lab-5G", "password123")

    assert engine.snapshot.session is None
    assert not engine.stream.running
    assert orchestrator.stream_connects == 0
    assert not engine.pending.has(CommandKind.START)
    await engine.stop()


@pytest.mark.asyncio
async def test_startup_offers_and_resumes_interrupted_session(settings, orchestrator) -> None:
    engine = _engine(settings, orchestrator)
    await engine.store.put(
        RecoverableSessionRecord(id=SESSION_ID, state=SessionState.ACTIVE, target_ssid="Lab-5G", updated_at=ts(30))
    )
    orchestrator.on("GET", f"{SESSIONS}/recoverable", {"sessions": [session_payload("paused", updated=30)]})
    orchestrator.on(
        "POST",
        f"{SESSIONS}/{SESSION_ID}/resume",
        {"session": session_payload("paused", updated=31), "devices": []},
    )
    orchestrator.streams = [_session("paused") + _session("closing") + _session("closed")]
    queue = engine.register_ui()

    candidates = await engine.start()

    assert [c.id for c in candidates] == [SESSION_ID]
    announced = queue.get_nowait()
    assert announced.type == "recovery_available"
    assert announced.data["sessions"][0]["remote_confirmed"] is True

    await engine.resume_recoverable(SESSION_ID)
    assert engine.snapshot.session.id == SESSION_ID
    await asyncio.wait_for(engine.stream.wait(), timeout=5)
    assert engine.snapshot.session.state is SessionState.CLOSED
    assert await engine.store.get(SESSION_ID) is None
    await engine.stop()


@pytest.mark.asyncio
async def test_stale_resume_is_reported_and_purged(settings, orchestrator) -> None:
    engine = _engine(settings, orchestrator)
    await engine.store.put(
        RecoverableSessionRecord(id="sess_gone", state=SessionState.ACTIVE, target_ssid="Lab-5G", updated_at=ts(1))
    )
    orchestrator.on(
        "POST", f"{SESSIONS}/sess_gone/resume", httpx.Response(410, json=error_envelope("SESSION_EXPIRED"))
    )
    await engine.start()
    queue = engine.register_ui()

    with pytest.raises(StaleSessionError):
        await engine.resume_recoverable("sess_gone")

    notice = queue.get_nowait()
    assert notice.type == "recovery_failed"
    assert notice.data == {"session_id": "sess_gone", "reason": "SESSION_EXPIRED"}
    assert await engine.store.get("sess_gone") is None
    assert orchestrator.stream_connects == 0
    await engine.stop()


@pytest.mark.asyncio
async def test_slow_subscriber_drops_oldest(settings, orchestrator) -> None:
    engine = _engine(settings.model_copy(update={"subscriber_queue_size": 2}), orchestrator)
    queue = engine.register_ui()
    for n in range(4):
        await engine.dispatcher.connection_changed(ConnectionState.RECONNECTING, f"drop {n}")

    reasons = [event.data["reason"] for event in _drain(queue)]
    assert reasons == ["drop 2", "drop 3"]
    engine.unregister_ui(queue)
    await engine.stop()
