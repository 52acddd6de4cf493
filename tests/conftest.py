from __future__ import annotations

import asyncio
import inspect
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

import httpx
import pytest

from provisioning.backend.schemas import StreamEvent, build_event
from provisioning.config import Settings
from provisioning.dispatcher import EventDispatcher
from provisioning.pending import PendingCommands
from provisioning.state import DeviceState, EventType, SessionState
from provisioning.store import InMemorySessionStore

API = "http://orchestrator.test/api/v1"
SESSION_ID = "sess_lab5g"
MAC_1 = "AA:BB:CC:DD:EE:01"
MAC_2 = "AA:BB:CC:DD:EE:02"
MAC_3 = "AA:BB:CC:DD:EE:03"

_BASE_TIME = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


def ts(seconds: int = 0) -> datetime:
    return _BASE_TIME + timedelta(seconds=seconds)


def session_payload(
    state: Union[SessionState, str] = SessionState.DISCOVERING,
    *,
    session_id: str = SESSION_ID,
    ssid: str = "Lab-5G",
    updated: int = 0,
    **counters: int,
) -> Dict[str, Any]:
    return {
        "id": session_id,
        "state": state.value if isinstance(state, SessionState) else state,
        "target_ssid": ssid,
        "created_at": ts(0).isoformat(),
        "updated_at": ts(updated).isoformat(),
        "device_count": counters.get("device_count", 0),
        "provisioned_count": counters.get("provisioned_count", 0),
        "verified_count": counters.get("verified_count", 0),
        "failed_count": counters.get("failed_count", 0),
    }


def session_event(state: Union[SessionState, str] = SessionState.DISCOVERING, **kwargs: Any) -> StreamEvent:
    return build_event(EventType.SESSION_UPDATED, {"session": session_payload(state, **kwargs)})


def discovered_event(mac: str = MAC_1, *, allowlisted: bool = True, **extra: Any) -> StreamEvent:
    payload = {
        "mac": mac,
        "ip": "192.168.4.20",
        "rssi": -61,
        "firmware_version": "1.4.2",
        "in_allowlist": allowlisted,
    }
    payload.update(extra)
    return build_event(EventType.DEVICE_DISCOVERED, payload)


def state_event(
    mac: str,
    old: Optional[DeviceState],
    new: DeviceState,
    **extra: Any,
) -> StreamEvent:
    payload: Dict[str, Any] = {"mac": mac, "new_state": new.value}
    if old is not None:
        payload["old_state"] = old.value
    payload.update(extra)
    return build_event(EventType.DEVICE_STATE_CHANGED, payload)


def heartbeat_event() -> StreamEvent:
    return build_event(EventType.HEARTBEAT, {})


def envelope(data: Dict[str, Any]) -> Dict[str, Any]:
    return {"success": True, "data": data, "correlation_id": "corr-test"}


def error_envelope(code: str, message: str = "rejected", retryable: bool = False) -> Dict[str, Any]:
    return {
        "success": False,
        "error": {"code": code, "message": message, "retryable": retryable},
        "correlation_id": "corr-test",
    }


def sse_frame(event_type: str, payload: Dict[str, Any]) -> str:
    body = {"version": "1.0", "type": event_type, "timestamp": ts(5).isoformat(), "payload": payload}
    return f"event: {event_type}\ndata: {json.dumps(body)}\n\n"


RouteResult = Union[httpx.Response, Dict[str, Any]]
Route = Callable[[httpx.Request], Union[RouteResult, Awaitable[RouteResult]]]


class FakeOrchestrator:
    """Scripted stand-in for the orchestrator API, served through ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Route] = {}
        self.streams: List[Union[str, int, Exception]] = []
        self.stream_connects = 0

    def on(self, method: str, path: str, response: Union[Route, Dict[str, Any], httpx.Response]) -> None:
        if callable(response):
            self.routes[(method, path)] = response
        else:
            self.routes[(method, path)] = lambda request: response

    def command_requests(self) -> List[httpx.Request]:
        return [r for r in self.requests if not r.url.path.endswith("/provisioning/batch/events")]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/provisioning/batch/events"):
            return self._stream_response()
        route = self.routes.get((request.method, path))
        if route is None:
            return httpx.Response(404, json=error_envelope("NOT_ROUTED", f"{request.method} {path}"))
        result = route(request)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, httpx.Response):
            return result
        return httpx.Response(200, json=envelope(result))

    def _stream_response(self) -> httpx.Response:
        self.stream_connects += 1
        if not self.streams:
            return httpx.Response(503)
        script = self.streams.pop(0)
        if isinstance(script, Exception):
            raise script
        if isinstance(script, int):
            return httpx.Response(script)
        return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=script.encode())

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


class FakeSleep:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        orchestrator_api_url="http://orchestrator.test",
        store_backend="memory",
        reconnect_initial_delay_s=1.0,
        reconnect_max_delay_s=8.0,
        reconnect_jitter_s=0.0,
        max_reconnect_attempts=3,
    )


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def pending() -> PendingCommands:
    return PendingCommands()


@pytest.fixture
def published() -> List[Any]:
    return []


@pytest.fixture
def dispatcher(store: InMemorySessionStore, pending: PendingCommands, published: List[Any]) -> EventDispatcher:
    async def publish(event: Any) -> None:
        published.append(event)

    return EventDispatcher(store, pending=pending, publish=publish)


@pytest.fixture
def orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest.fixture
def fake_sleep() -> FakeSleep:
    return FakeSleep()
