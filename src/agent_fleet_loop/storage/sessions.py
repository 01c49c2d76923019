from __future__ import annotations

import json
import time
from collections.abc import Callable
from uuid import uuid4

from agent_fleet_loop.models import Session
from agent_fleet_loop.storage.execution_log import utc_now
from agent_fleet_loop.storage.store import FleetStore


class SessionRepository:
    def __init__(self, store: FleetStore):
        self._store = store

    def load(self, session_id: str) -> Session | None:
        row = self._store.execute(
            "SELECT data_json FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return Session.from_dict(json.loads(row["data_json"]))

    def save(self, session: Session) -> None:
        with self._store.transaction():
            self._write(session)

    def create(
        self,
        *,
        session_id: str | None = None,
        name: str = "",
        provider: str = "claude-cli",
        model: str = "",
        agent_id: str | None = None,
        tools: list[str] | None = None,
        cwd: str | None = None,
    ) -> Session:
        session = Session(
            id=session_id or str(uuid4()),
            name=name,
            provider=provider,
            model=model,
            agent_id=agent_id,
            tools=tools,
            cwd=cwd,
            created_at=time.time(),
        )
        self.save(session)
        return session

    def update(self, session_id: str, mutate: Callable[[Session], bool]) -> Session | None:
        """Read-modify-write in one transaction; ``mutate`` returns True to persist."""
        with self._store.transaction():
            current = self.load(session_id)
            if current is None:
                return None
            if mutate(current):
                self._write(current)
            return current

    def history(self, session_id: str) -> list[dict]:
        session = self.load(session_id)
        if session is None:
            return []
        return [{"role": m.role, "content": m.text} for m in session.messages if m.text]

    def _write(self, session: Session) -> None:
        now = utc_now()
        self._store.execute(
            """
            INSERT INTO sessions (id, name, agent_id, created_at, updated_at, data_json)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                agent_id = excluded.agent_id,
                updated_at = excluded.updated_at,
                data_json = excluded.data_json
            """,
            (
                session.id,
                session.name,
                session.agent_id,
                now,
                now,
                json.dumps(session.to_dict(), ensure_ascii=True),
            ),
        )
