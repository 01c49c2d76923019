from __future__ import annotations

import json

from agent_fleet_loop.settings import FleetSettings
from agent_fleet_loop.storage.execution_log import utc_now
from agent_fleet_loop.storage.store import FleetStore

_APP_SETTINGS_KEY = "app"


class SettingsRepository:
    def __init__(self, store: FleetStore):
        self._store = store

    def load_raw(self) -> dict:
        row = self._store.execute(
            "SELECT data_json FROM settings WHERE key = ? LIMIT 1",
            (_APP_SETTINGS_KEY,),
        ).fetchone()
        if row is None:
            return {}
        try:
            parsed = json.loads(row["data_json"])
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}

    def load(self) -> FleetSettings:
        return FleetSettings.from_dict(self.load_raw())

    def save(self, values: dict) -> None:
        merged = {**self.load_raw(), **values}
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO settings (key, data_json, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    data_json = excluded.data_json,
                    updated_at = excluded.updated_at
                """,
                (_APP_SETTINGS_KEY, json.dumps(merged, ensure_ascii=True), utc_now()),
            )
