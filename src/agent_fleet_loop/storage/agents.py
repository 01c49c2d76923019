from __future__ import annotations

import json
from dataclasses import dataclass
from uuid import uuid4

from agent_fleet_loop.models import AgentProfile
from agent_fleet_loop.storage.execution_log import utc_now
from agent_fleet_loop.storage.store import FleetStore


@dataclass(frozen=True)
class CredentialRecord:
    id: str
    provider: str
    name: str
    encrypted_key: str


class AgentRepository:
    def __init__(self, store: FleetStore):
        self._store = store

    def get(self, agent_id: str) -> AgentProfile | None:
        row = self._store.execute(
            "SELECT data_json FROM agents WHERE id = ? LIMIT 1",
            (agent_id,),
        ).fetchone()
        if row is None:
            return None
        return AgentProfile.from_dict(json.loads(row["data_json"]))

    def load_agents(self) -> dict[str, AgentProfile]:
        rows = self._store.execute("SELECT data_json FROM agents").fetchall()
        agents = [AgentProfile.from_dict(json.loads(row["data_json"])) for row in rows]
        return {agent.id: agent for agent in agents}

    def save(self, agent: AgentProfile) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO agents (id, name, updated_at, data_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    updated_at = excluded.updated_at,
                    data_json = excluded.data_json
                """,
                (agent.id, agent.name, utc_now(), json.dumps(agent.to_dict(), ensure_ascii=True)),
            )


class CredentialRepository:
    def __init__(self, store: FleetStore):
        self._store = store

    def load(self) -> dict[str, CredentialRecord]:
        rows = self._store.execute("SELECT id FROM credentials").fetchall()
        records = [self.get(str(row["id"])) for row in rows]
        return {r.id: r for r in records if r is not None}

    def get(self, credential_id: str) -> CredentialRecord | None:
        row = self._store.execute(
            "SELECT id, provider, name, encrypted_key FROM credentials WHERE id = ? LIMIT 1",
            (credential_id,),
        ).fetchone()
        if row is None:
            return None
        return CredentialRecord(
            id=row["id"],
            provider=row["provider"],
            name=row["name"],
            encrypted_key=row["encrypted_key"],
        )

    def add(self, provider: str, encrypted_key: str, *, name: str = "") -> str:
        credential_id = str(uuid4())
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO credentials (id, provider, name, encrypted_key, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (credential_id, provider, name, encrypted_key, utc_now()),
            )
        return credential_id
