"""Session persistence adapters."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path

from adaptive_rag.types import Session


class InMemorySessionStore:
    """Process-local session store."""

    def __init__(self) -> None:
        self._sessions: dict[str, dict] = {}
        self._lock = threading.Lock()

    async def load(self, session_id: str) -> Session | None:
        with self._lock:
            payload = self._sessions.get(session_id)
        return Session.from_dict(payload) if payload is not None else None

    async def save(self, session: Session) -> None:
        payload = session.to_dict()
        with self._lock:
            self._sessions[session.session_id] = payload

    async def delete(self, session_id: str) -> bool:
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._sessions)


class SqliteSessionStore:
    """Sessions stored as JSON documents in a single sqlite table.

    sqlite calls run in a worker thread so the event loop never blocks on disk.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        _ensure_sessions_table(self.db_path)

    async def load(self, session_id: str) -> Session | None:
        payload = await asyncio.to_thread(self._read, session_id)
        return Session.from_dict(json.loads(payload)) if payload is not None else None

    async def save(self, session: Session) -> None:
        payload = json.dumps(session.to_dict(), ensure_ascii=False)
        await asyncio.to_thread(
            self._write, session.session_id, payload, session.metadata.last_active_at
        )

    async def delete(self, session_id: str) -> bool:
        return await asyncio.to_thread(self._delete, session_id)

    async def list_ids(self) -> list[str]:
        return await asyncio.to_thread(self._list_ids)

    def _read(self, session_id: str) -> str | None:
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                "SELECT payload FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
        return None if row is None else str(row[0])

    def _write(self, session_id: str, payload: str, updated_at: float) -> None:
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                "INSERT INTO sessions(session_id, payload, updated_at) VALUES(?, ?, ?) "
                "ON CONFLICT(session_id) DO UPDATE SET payload=excluded.payload, "
                "updated_at=excluded.updated_at",
                (session_id, payload, updated_at),
            )
            conn.commit()

    def _delete(self, session_id: str) -> bool:
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE session_id = ?", (session_id,))
            conn.commit()
        return cursor.rowcount > 0

    def _list_ids(self) -> list[str]:
        with sqlite3.connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT session_id FROM sessions ORDER BY updated_at DESC"
            ).fetchall()
        return [str(row[0]) for row in rows]


def _ensure_sessions_table(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    with sqlite3.connect(db_path) as conn:
        conn.execute(
            "CREATE TABLE IF NOT EXISTS sessions("
            "session_id TEXT PRIMARY KEY, payload TEXT NOT NULL, updated_at REAL NOT NULL)"
        )
        conn.commit()
