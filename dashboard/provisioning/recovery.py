"""Startup reconciliation of interrupted sessions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

from .backend.http_client import OrchestratorHttpClient
from .backend.schemas import SessionDataModel, SessionModel
from .errors import CommandRejected, StaleSessionError
from .state import RecoverableSessionRecord, SessionState
from .store import SessionStore

logger = logging.getLogger(__name__)

ResumeHook = Callable[[SessionDataModel], Awaitable[None]]


@dataclass(frozen=True)
class RecoveryCandidate:
    """One entry of the resume/discard prompt.

    ``remote_confirmed`` is ``None`` when the orchestrator could not be asked.
    """

    record: RecoverableSessionRecord
    remote_confirmed: Optional[bool]
    local: bool = True

    @property
    def id(self) -> str:
        return self.record.id

    def to_dict(self) -> Dict[str, object]:
        counters = self.record.counters
        return {
            "id": self.record.id,
            "state": self.record.state.value,
            "target_ssid": self.record.target_ssid,
            "updated_at": self.record.updated_at.isoformat(),
            "device_count": counters.device_count,
            "provisioned_count": counters.provisioned_count,
            "verified_count": counters.verified_count,
            "failed_count": counters.failed_count,
            "remote_confirmed": self.remote_confirmed,
            "local": self.local,
        }


@dataclass(frozen=True)
class DiscardResult:
    session_id: str
    removed_locally: bool
    remote_closed: bool


class RecoveryReconciler:
    def __init__(self, store: SessionStore, http: OrchestratorHttpClient) -> None:
        self._store = store
        self._http = http

    async def list_recoverable(self, *, check_remote: bool = True) -> List[RecoveryCandidate]:
        """Local records merged with the orchestrator's list, newest first."""

        records = {record.id: record for record in await self._store.list()}
        remote: Optional[Dict[str, SessionModel]] = None
        if check_remote:
            try:
                remote = {session.id: session for session in await self._http.list_recoverable()}
            except CommandRejected as exc:
                logger.warning("Could not confirm recoverable sessions with orchestrator: %s", exc)

        candidates = [
            RecoveryCandidate(
                record=record,
                remote_confirmed=None if remote is None else record.id in remote,
            )
            for record in records.values()
        ]
        if remote is not None:
            for session_id, session in remote.items():
                if session_id in records:
                    continue
                # Local state was lost; the orchestrator remains the source of truth.
                record = RecoverableSessionRecord.from_session(session.to_domain())
                candidates.append(RecoveryCandidate(record=record, remote_confirmed=True, local=False))

        candidates.sort(key=lambda candidate: candidate.record.updated_at, reverse=True)
        return candidates

    async def primary(self, *, check_remote: bool = True) -> Optional[RecoveryCandidate]:
        candidates = await self.list_recoverable(check_remote=check_remote)
        return candidates[0] if candidates else None

    async def resume(self, session_id: str, on_resumed: Optional[ResumeHook] = None) -> SessionDataModel:
        try:
            data = await self._http.resume_recoverable(session_id)
        except CommandRejected as exc:
            if not exc.is_stale_session:
                raise
            removed = await self._store.delete(session_id)
            logger.info(
                "Session %s is gone on the orchestrator (%s); local record removed=%s",
                session_id,
                exc.code,
                removed,
            )
            raise StaleSessionError(session_id, exc.code) from exc
        if data.session.state is SessionState.CLOSED:
            removed = await self._store.delete(session_id)
            logger.info(
                "Session %s was already closed on the orchestrator; local record removed=%s", session_id, removed
            )
            raise StaleSessionError(session_id, "SESSION_ALREADY_CLOSED")
        logger.info("Resumed session %s in state %s", session_id, data.session.state.value)
        if on_resumed is not None:
            await on_resumed(data)
        return data

    async def discard(self, session_id: str) -> DiscardResult:
        removed = await self._store.delete(session_id)
        remote_closed = False
        try:
            await self._http.discard_recoverable(session_id)
            remote_closed = True
        except CommandRejected as exc:
            if exc.is_stale_session:
                logger.info("Discarded session %s was already gone remotely", session_id)
            else:
                logger.warning("Remote discard of %s failed: %s", session_id, exc)
        return DiscardResult(session_id=session_id, removed_locally=removed, remote_closed=remote_closed)

    async def history(self, limit: int = 10) -> List[SessionModel]:
        return await self._http.session_history(limit)


__all__ = ["DiscardResult", "RecoveryCandidate", "RecoveryReconciler"]
