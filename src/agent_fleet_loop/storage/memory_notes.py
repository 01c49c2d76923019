from __future__ import annotations

import sqlite3
from uuid import uuid4

from agent_fleet_loop.models import MemoryNote
from agent_fleet_loop.storage.execution_log import utc_now
from agent_fleet_loop.storage.store import FleetStore


def _to_note(row: sqlite3.Row) -> MemoryNote:
    return MemoryNote(
        id=row["id"],
        agent_id=row["agent_id"],
        session_id=row["session_id"],
        category=row["category"],
        title=row["title"],
        content=row["content"],
        created_at=row["created_at"],
    )


class MemoryNoteStore:
    def __init__(self, store: FleetStore):
        self._store = store

    def add(
        self,
        *,
        agent_id: str | None,
        session_id: str | None,
        category: str,
        title: str,
        content: str,
    ) -> MemoryNote:
        note = MemoryNote(
            id=str(uuid4()),
            agent_id=agent_id,
            session_id=session_id,
            category=category,
            title=title,
            content=content,
            created_at=utc_now(),
        )
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO memories (id, agent_id, session_id, category, title, content, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (note.id, note.agent_id, note.session_id, note.category, note.title, note.content, note.created_at),
            )
        return note

    def get_latest_by_session_category(self, session_id: str, category: str) -> MemoryNote | None:
        row = self._store.execute(
            """
            SELECT * FROM memories
            WHERE session_id = ? AND category = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT 1
            """,
            (session_id, category),
        ).fetchone()
        return _to_note(row) if row is not None else None

    def search(self, query: str, *, agent_id: str | None = None, limit: int = 10) -> list[MemoryNote]:
        pattern = f"%{query.strip()}%"
        if agent_id:
            rows = self._store.execute(
                """
                SELECT * FROM memories
                WHERE agent_id = ? AND (title LIKE ? OR content LIKE ?)
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (agent_id, pattern, pattern, max(1, limit)),
            ).fetchall()
        else:
            rows = self._store.execute(
                """
                SELECT * FROM memories
                WHERE title LIKE ? OR content LIKE ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (pattern, pattern, max(1, limit)),
            ).fetchall()
        return [_to_note(row) for row in rows]

    def count_for_session(self, session_id: str) -> int:
        row = self._store.execute(
            "SELECT COUNT(*) AS c FROM memories WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row["c"]) if row is not None else 0

    def list_for_agent(self, agent_id: str, *, limit: int = 20) -> list[MemoryNote]:
        rows = self._store.execute(
            """
            SELECT * FROM memories
            WHERE agent_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (agent_id, max(1, limit)),
        ).fetchall()
        return [_to_note(row) for row in rows]
