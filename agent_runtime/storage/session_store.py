"""
Session store: durable sessions and their per-turn event log.

Every turn ends with one `commit_turn(session, events)`: the session row
(state, memory, approvals, context) and the turn's events are written in a
single transaction, guarded by an optimistic version check. A writer that
loaded version N can only commit if the stored row is still at N; the row
is then written as N + 1. Either everything lands or nothing does.

Two backends:
- InMemoryStorage: dict of serialized sessions, swapped under an asyncio.Lock.
- SqliteStorage: sessions + events tables (WAL), blocking work run with
  asyncio.to_thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

from agent_runtime.config import Settings
from agent_runtime.errors import StorageError
from agent_runtime.models import MemoryEntry, Session
from agent_runtime.storage.db import connect, init_db

logger = logging.getLogger("agent-runtime")


class Storage(Protocol):
    async def load_session(self, session_id: str) -> Optional[Session]:  # pragma: no cover - interface only
        ...

    async def save_session(self, session: Session) -> Session:  # pragma: no cover - interface only
        ...

    async def append_memory(self, session_id: str, entries: Sequence[MemoryEntry]) -> int:  # pragma: no cover - interface only
        ...

    async def commit_turn(self, session: Session, events: Sequence[Mapping[str, Any]]) -> Session:  # pragma: no cover - interface only
        ...

    async def delete_session(self, session_id: str) -> bool:  # pragma: no cover - interface only
        ...

    async def events(self, session_id: str) -> List[Dict[str, Any]]:  # pragma: no cover - interface only
        ...


def _conflict(session_id: str, expected: int, found: int) -> StorageError:
    return StorageError(
        "Session was modified concurrently",
        code="storage_conflict",
        details={"session_id": session_id, "expected_version": expected, "stored_version": found},
    )


def _event_row(event: Mapping[str, Any]) -> Dict[str, Any]:
    return {
        "kind": str(event.get("kind", "event")),
        "payload": event.get("payload"),
        "ts": float(event.get("ts") or time.time()),
    }


class InMemoryStorage:
    """Process-local storage. Sessions are kept serialized so callers never share objects."""

    def __init__(self) -> None:
        self._sessions: Dict[str, str] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}
        self._lock = asyncio.Lock()

    async def load_session(self, session_id: str) -> Optional[Session]:
        raw = self._sessions.get(session_id)
        return Session.model_validate_json(raw) if raw is not None else None

    async def save_session(self, session: Session) -> Session:
        return await self.commit_turn(session, [])

    async def commit_turn(self, session: Session, events: Sequence[Mapping[str, Any]]) -> Session:
        async with self._lock:
            raw = self._sessions.get(session.id)
            stored = Session.model_validate_json(raw).version if raw is not None else 0
            if stored != session.version:
                raise _conflict(session.id, session.version, stored)
            new_version = session.version + 1
            rows = [{**_event_row(e), "version": new_version} for e in events]
            self._sessions[session.id] = session.model_copy(update={"version": new_version}).model_dump_json()
            self._events.setdefault(session.id, []).extend(rows)
        session.version = new_version
        return session

    async def append_memory(self, session_id: str, entries: Sequence[MemoryEntry]) -> int:
        async with self._lock:
            raw = self._sessions.get(session_id)
            if raw is None:
                return 0
            session = Session.model_validate_json(raw)
            for entry in entries:
                session.memory.entries.append(entry.model_copy(update={"seq": session.memory.next_seq}))
                session.memory.next_seq += 1
            session.version += 1
            self._sessions[session_id] = session.model_dump_json()
            self._events.setdefault(session_id, []).extend(
                {"kind": "memory_appended", "payload": {"role": e.role}, "ts": time.time(), "version": session.version}
                for e in entries
            )
        return len(entries)

    async def delete_session(self, session_id: str) -> bool:
        async with self._lock:
            self._events.pop(session_id, None)
            return self._sessions.pop(session_id, None) is not None

    async def events(self, session_id: str) -> List[Dict[str, Any]]:
        return [dict(e) for e in self._events.get(session_id, [])]


class SqliteStorage:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._initialized = False

    def _ensure(self) -> None:
        if not self._initialized:
            init_db(self.db_path)
            self._initialized = True

    async def _run(self, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except sqlite3.Error as exc:
            logger.error("sqlite storage failed path=%s error=%s", self.db_path, exc)
            raise StorageError("Session storage failed", details={"message": str(exc)}) from exc

    def _load_sync(self, session_id: str) -> Optional[str]:
        self._ensure()
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT data FROM sessions WHERE id = ?", (session_id,)).fetchone()
        finally:
            conn.close()
        return row["data"] if row is not None else None

    async def load_session(self, session_id: str) -> Optional[Session]:
        raw = await self._run(self._load_sync, session_id)
        return Session.model_validate_json(raw) if raw is not None else None

    async def save_session(self, session: Session) -> Session:
        return await self.commit_turn(session, [])

    def _commit_sync(self, session: Session, events: Sequence[Mapping[str, Any]]) -> int:
        self._ensure()
        conn = connect(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute("SELECT version FROM sessions WHERE id = ?", (session.id,)).fetchone()
                stored = row["version"] if row is not None else 0
                if stored != session.version:
                    raise _conflict(session.id, session.version, stored)
                new_version = session.version + 1
                data = session.model_copy(update={"version": new_version}).model_dump_json()
                now = time.time()
                if row is None:
                    conn.execute(
                        "INSERT INTO sessions (id, agent, version, data, updated_at) VALUES (?, ?, ?, ?, ?)",
                        (session.id, session.agent, new_version, data, now),
                    )
                else:
                    conn.execute(
                        "UPDATE sessions SET version = ?, data = ?, updated_at = ? WHERE id = ?",
                        (new_version, data, now, session.id),
                    )
                for event in events:
                    ev = _event_row(event)
                    conn.execute(
                        "INSERT INTO events (session_id, version, kind, payload, ts) VALUES (?, ?, ?, ?, ?)",
                        (session.id, new_version, ev["kind"], json.dumps(ev["payload"], default=str), ev["ts"]),
                    )
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()
        return new_version

    async def commit_turn(self, session: Session, events: Sequence[Mapping[str, Any]]) -> Session:
        session.version = await self._run(self._commit_sync, session, list(events))
        return session

    async def append_memory(self, session_id: str, entries: Sequence[MemoryEntry]) -> int:
        session = await self.load_session(session_id)
        if session is None:
            return 0
        for entry in entries:
            session.memory.entries.append(entry.model_copy(update={"seq": session.memory.next_seq}))
            session.memory.next_seq += 1
        await self.commit_turn(
            session, [{"kind": "memory_appended", "payload": {"role": e.role}} for e in entries]
        )
        return len(entries)

    def _delete_sync(self, session_id: str) -> bool:
        self._ensure()
        conn = connect(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute("DELETE FROM events WHERE session_id = ?", (session_id,))
                cur = conn.execute("DELETE FROM sessions WHERE id = ?", (session_id,))
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            return cur.rowcount > 0
        finally:
            conn.close()

    async def delete_session(self, session_id: str) -> bool:
        return await self._run(self._delete_sync, session_id)

    def _events_sync(self, session_id: str) -> List[Dict[str, Any]]:
        self._ensure()
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                "SELECT version, kind, payload, ts FROM events WHERE session_id = ? ORDER BY id",
                (session_id,),
            ).fetchall()
        finally:
            conn.close()
        out = []
        for r in rows:
            try:
                payload = json.loads(r["payload"]) if r["payload"] else None
            except (json.JSONDecodeError, TypeError):
                payload = None
            out.append({"kind": r["kind"], "payload": payload, "ts": r["ts"], "version": r["version"]})
        return out

    async def events(self, session_id: str) -> List[Dict[str, Any]]:
        return await self._run(self._events_sync, session_id)


def build_storage(settings: Settings) -> Storage:
    if settings.storage == "sqlite":
        return SqliteStorage(settings.db_path)
    if settings.storage != "memory":
        logger.warning("unknown STORAGE=%s, using memory", settings.storage)
    return InMemoryStorage()
