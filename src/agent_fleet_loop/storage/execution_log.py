from __future__ import annotations

import json
from datetime import UTC, datetime
from uuid import uuid4

from agent_fleet_loop.storage.store import FleetStore


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds")


class ExecutionLog:
    def __init__(self, store: FleetStore):
        self._store = store

    def record(self, session_id: str, event_type: str, payload: dict) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO events (id, session_id, type, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    str(uuid4()),
                    session_id,
                    event_type,
                    json.dumps(payload, ensure_ascii=True, default=str),
                    utc_now(),
                ),
            )

    def list_for_session(self, session_id: str, *, limit: int = 50) -> list[dict]:
        rows = self._store.execute(
            """
            SELECT type, payload_json, created_at
            FROM events
            WHERE session_id = ?
            ORDER BY created_at DESC, rowid DESC
            LIMIT ?
            """,
            (session_id, max(1, limit)),
        ).fetchall()
        return [
            {"type": row["type"], "payload": json.loads(row["payload_json"]), "created_at": row["created_at"]}
            for row in rows
        ]
