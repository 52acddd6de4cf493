"""Session orchestration for batch provisioning."""
from __future__ import annotations

import asyncio
from asyncio import QueueEmpty
import logging
from typing import Any, Dict, List, Optional

import httpx

from .backend.http_client import OrchestratorHttpClient
from .backend.schemas import DeviceOperationModel, ProvisionAllModel, SessionDataModel, SessionModel, StreamEvent
from .backend.stream_client import EventStreamClient
from .commands import CommandClient
from .config import Settings, get_settings
from .dispatcher import EventDispatcher, device_to_dict, session_to_dict
from .errors import CommandRejected, StaleSessionError
from .pending import PendingCommands
from .recovery import DiscardResult, RecoveryCandidate, RecoveryReconciler
from .state import ConnectionState, EngineEvent, SessionSnapshot, SessionState
from .store import SessionStore, build_store

logger = logging.getLogger(__name__)


class ProvisioningEngine:
    """Coordinates the command client, event stream, dispatcher and recovery."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        store: Optional[SessionStore] = None,
        http_client: Optional[OrchestratorHttpClient] = None,
        stream_client: Optional[EventStreamClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._ui_subscribers: List[asyncio.Queue[EngineEvent]] = []

        self.store = store or build_store(self.settings)
        self._http_client = http_client or OrchestratorHttpClient(self.settings)
        self._stream_client = stream_client or EventStreamClient(self.settings)
        self.pending = PendingCommands()
        self.dispatcher = EventDispatcher(self.store, pending=self.pending, publish=self._broadcast)
        self.commands = CommandClient(self._http_client, lambda: self.dispatcher.snapshot, self.pending)
        self.recovery = RecoveryReconciler(self.store, self._http_client)

    @property
    def snapshot(self) -> SessionSnapshot:
        return self.dispatcher.snapshot

    @property
    def stream(self) -> EventStreamClient:
        return self._stream_client

    @property
    def connection_state(self) -> ConnectionState:
        return self._stream_client.state

    async def start(self) -> List[RecoveryCandidate]:
        """Open the store and return sessions that can be offered for resume."""

        logger.info("Starting provisioning engine")
        await self.store.open()
        candidates = await self.recovery.list_recoverable()
        if candidates:
            primary = candidates[0]
            logger.info(
                "Found %d recoverable session(s); most recent %s (%s)",
                len(candidates),
                primary.id,
                primary.record.state.value,
            )
            await self._broadcast(
                EngineEvent(type="recovery_available", data={"sessions": [c.to_dict() for c in candidates]})
            )
        return candidates

    async def stop(self) -> None:
        logger.info("Stopping provisioning engine")
        await self._stream_client.aclose()
        await self._http_client.aclose()
        await self.store.close()

    def register_ui(self) -> asyncio.Queue[EngineEvent]:
        queue: asyncio.Queue[EngineEvent] = asyncio.Queue(maxsize=self.settings.subscriber_queue_size)
        self._ui_subscribers.append(queue)
        return queue

    def unregister_ui(self, queue: asyncio.Queue[EngineEvent]) -> None:
        if queue in self._ui_subscribers:
            self._ui_subscribers.remove(queue)

    async def _broadcast(self, event: EngineEvent) -> None:
        logger.debug("Broadcasting event: %s", event.type)
        for queue in list(self._ui_subscribers):
            if queue.full():
                try:
                    queue.get_nowait()
                except QueueEmpty:
                    pass
            queue.put_nowait(event)

    # Session lifecycle

    async def start_session(self, ssid: str, password: str, config: Optional[Dict[str, int]] = None) -> SessionModel:
        session = await self.commands.start(ssid, password, config)
        await self.dispatcher.seed(session)
        await self._attach(session.id)
        return session

    async def stop_session(self) -> SessionModel:
        return await self.commands.stop()

    async def pause_session(self) -> SessionModel:
        return await self.commands.pause()

    async def resume_session(self) -> SessionModel:
        return await self.commands.resume()

    async def provision(self, mac: str) -> DeviceOperationModel:
        return await self.commands.provision_one(mac)

    async def provision_all(self) -> ProvisionAllModel:
        return await self.commands.provision_all()

    async def retry(self, mac: str) -> DeviceOperationModel:
        return await self.commands.retry(mac)

    async def skip(self, mac: str) -> DeviceOperationModel:
        return await self.commands.skip(mac)

    async def reconnect(self) -> None:
        """Operator-requested reconnect; also re-attaches a detached open session."""

        session = self.snapshot.session
        if session is None or session.state is SessionState.CLOSED:
            raise CommandRejected("SESSION_NOT_ACTIVE")
        if self._stream_client.session_id != session.id:
            await self._attach(session.id)
            return
        await self._stream_client.reconnect()

    async def detach(self) -> None:
        await self._stream_client.detach()

    # Recovery

    async def resume_recoverable(self, session_id: str) -> SessionDataModel:
        try:
            return await self.recovery.resume(session_id, on_resumed=self._on_resumed)
        except StaleSessionError as exc:
            await self._broadcast(
                EngineEvent(
                    type="recovery_failed",
                    data={"session_id": session_id, "reason": exc.reason},
                    error=exc.user_message,
                )
            )
            raise

    async def discard_recoverable(self, session_id: str) -> DiscardResult:
        result = await self.recovery.discard(session_id)
        if self.snapshot.session is not None and self.snapshot.session.id == session_id:
            await self._stream_client.detach()
            self.dispatcher.reset()
        await self._broadcast(
            EngineEvent(
                type="recovery_discarded",
                data={"session_id": session_id, "remote_closed": result.remote_closed},
            )
        )
        return result

    async def _on_resumed(self, data: SessionDataModel) -> None:
        await self.dispatcher.seed(data.session)
        await self._attach(data.session.id)

    # Stream plumbing

    async def _attach(self, session_id: str) -> None:
        if self.snapshot.session is not None and self.snapshot.session.state is SessionState.CLOSED:
            logger.info("Session %s already closed; not attaching stream", session_id)
            return
        await self._stream_client.attach(
            session_id,
            self._on_stream_event,
            self._on_connection_state,
            keep_alive=self._session_open,
        )

    def _session_open(self) -> bool:
        return self.snapshot.session is None or self.snapshot.session.state is not SessionState.CLOSED

    async def _on_stream_event(self, event: StreamEvent) -> None:
        await self.dispatcher.handle(event)

    async def _on_connection_state(self, state: ConnectionState, reason: Optional[str]) -> None:
        await self.dispatcher.connection_changed(state, reason)

    def describe(self) -> Dict[str, Any]:
        snapshot = self.snapshot
        return {
            "session": session_to_dict(snapshot.session) if snapshot.session else None,
            "devices": [device_to_dict(device) for device in snapshot.devices.values()],
            "device_counts": snapshot.device_counts(),
            "connection": self.connection_state.value,
            "resyncing": snapshot.resyncing,
            "pending": [
                {"kind": entry.kind.value, "mac": entry.mac, "issued_at": entry.issued_at.isoformat()}
                for entry in self.pending.snapshot()
            ],
        }


def build_engine(settings: Optional[Settings] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None) -> ProvisioningEngine:
    """Engine wired to a shared transport; tests pass an ``httpx.MockTransport``."""

    settings = settings or get_settings()
    command_client = httpx.AsyncClient(
        base_url=settings.api_base_url, timeout=settings.request_timeout_s, transport=transport
    )
    return ProvisioningEngine(
        settings=settings,
        http_client=OrchestratorHttpClient(settings, client=command_client),
        stream_client=EventStreamClient(settings, transport=transport),
    )


__all__ = ["ProvisioningEngine", "build_engine"]
