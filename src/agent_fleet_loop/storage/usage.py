from __future__ import annotations

import time
from dataclasses import dataclass
from uuid import uuid4

from agent_fleet_loop.storage.store import FleetStore


@dataclass(frozen=True)
class UsageRecord:
    session_id: str | None
    provider: str
    model: str
    input_tokens: int
    output_tokens: int
    estimated_cost: float
    timestamp: float


class UsageRepository:
    def __init__(self, store: FleetStore):
        self._store = store

    def record(
        self,
        *,
        session_id: str | None,
        provider: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        estimated_cost: float,
        timestamp: float | None = None,
    ) -> None:
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO usage (id, session_id, provider, model, input_tokens, output_tokens, estimated_cost, timestamp)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    str(uuid4()),
                    session_id,
                    provider,
                    model,
                    max(0, input_tokens),
                    max(0, output_tokens),
                    estimated_cost,
                    time.time() if timestamp is None else timestamp,
                ),
            )

    def load_since(self, since: float) -> list[UsageRecord]:
        rows = self._store.execute(
            """
            SELECT session_id, provider, model, input_tokens, output_tokens, estimated_cost, timestamp
            FROM usage
            WHERE timestamp >= ?
            ORDER BY timestamp ASC
            """,
            (since,),
        ).fetchall()
        return [
            UsageRecord(
                session_id=row["session_id"],
                provider=row["provider"],
                model=row["model"],
                input_tokens=int(row["input_tokens"]),
                output_tokens=int(row["output_tokens"]),
                estimated_cost=float(row["estimated_cost"]),
                timestamp=float(row["timestamp"]),
            )
            for row in rows
        ]
