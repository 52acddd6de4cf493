"""Durable store for recoverable session summaries."""
from __future__ import annotations

import abc
import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite

from .config import Settings
from .state import Counters, RecoverableSessionRecord, SessionState, as_utc

logger = logging.getLogger(__name__)


class SessionStore(abc.ABC):
    """Keyed by session id, one record per recoverable session."""

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abc.abstractmethod
    async def put(self, record: RecoverableSessionRecord) -> None:
        ...

    @abc.abstractmethod
    async def get(self, session_id: str) -> Optional[RecoverableSessionRecord]:
        ...

    @abc.abstractmethod
    async def delete(self, session_id: str) -> bool:
        ...

    @abc.abstractmethod
    async def list(self) -> List[RecoverableSessionRecord]:
        """All records, most recently updated first."""


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._records: Dict[str, RecoverableSessionRecord] = {}

    async def put(self, record: RecoverableSessionRecord) -> None:
        self._records[record.id] = record

    async def get(self, session_id: str) -> Optional[RecoverableSessionRecord]:
        return self._records.get(session_id)

    async def delete(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None

    async def list(self) -> List[RecoverableSessionRecord]:
        return sorted(self._records.values(), key=lambda r: r.updated_at, reverse=True)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS recoverable_sessions (
    id TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    target_ssid TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    device_count INTEGER NOT NULL DEFAULT 0,
    provisioned_count INTEGER NOT NULL DEFAULT 0,
    verified_count INTEGER NOT NULL DEFAULT 0,
    failed_count INTEGER NOT NULL DEFAULT 0
);
"""

_COLUMNS = "id, state, target_ssid, updated_at, device_count, provisioned_count, verified_count, failed_count"


class SqliteSessionStore(SessionStore):
    """SQLite-backed store; survives process restarts."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._conn: Optional[aiosqlite.Connection] = None

    async def open(self) -> None:
        if self._conn is not None:
            return
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self.db_path))
        await self._conn.execute(_SCHEMA)
        await self._conn.commit()
        logger.info("Opened recoverable session store at %s", self.db_path)

    async def close(self) -> None:
        if self._conn is not None:
            await self._conn.close()
            self._conn = None

    @property
    def _db(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise RuntimeError("Session store is not open")
        return self._conn

    async def put(self, record: RecoverableSessionRecord) -> None:
        await self._db.execute(
            f"INSERT OR REPLACE INTO recoverable_sessions ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (
                record.id,
                record.state.value,
                record.target_ssid,
                record.updated_at.isoformat(),
                record.counters.device_count,
                record.counters.provisioned_count,
                record.counters.verified_count,
                record.counters.failed_count,
            ),
        )
        await self._db.commit()

    async def get(self, session_id: str) -> Optional[RecoverableSessionRecord]:
        async with self._db.execute(
            f"SELECT {_COLUMNS} FROM recoverable_sessions WHERE id = ?", (session_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return _row_to_record(row) if row else None

    async def delete(self, session_id: str) -> bool:
        cursor = await self._db.execute("DELETE FROM recoverable_sessions WHERE id = ?", (session_id,))
        await self._db.commit()
        return cursor.rowcount > 0

    async def list(self) -> List[RecoverableSessionRecord]:
        async with self._db.execute(f"SELECT {_COLUMNS} FROM recoverable_sessions") as cursor:
            rows = await cursor.fetchall()
        records = []
        for row in rows:
            try:
                records.append(_row_to_record(row))
            except ValueError:
                logger.warning("Skipping unreadable recoverable session row %r", row[0])
        return sorted(records, key=lambda r: r.updated_at, reverse=True)


def _row_to_record(row) -> RecoverableSessionRecord:
    return RecoverableSessionRecord(
        id=row[0],
        state=SessionState(row[1]),
        target_ssid=row[2],
        updated_at=as_utc(datetime.fromisoformat(row[3])),
        counters=Counters(
            device_count=row[4],
            provisioned_count=row[5],
            verified_count=row[6],
            failed_count=row[7],
        ),
    )


def build_store(settings: Settings) -> SessionStore:
    if settings.store_backend == "memory":
        return InMemorySessionStore()
    return SqliteSessionStore(settings.store_path)


__all__ = ["SessionStore", "InMemorySessionStore", "SqliteSessionStore", "build_store"]
