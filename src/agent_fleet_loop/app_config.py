from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

_ENV_KEYS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


@dataclass
class RuntimeEnv:
    anthropic_api_key: str | None
    openai_api_key: str | None
    brave_api_key: str | None

    def provider_keys(self) -> dict[str, str | None]:
        """Fallback keys by provider id, used when a session has no stored credential."""
        return {"anthropic": self.anthropic_api_key, "openai": self.openai_api_key}


@dataclass
class AppConfig:
    provider_name: str
    model: str
    max_tokens: int
    temperature: float
    max_tool_result_chars: int
    max_tool_iterations: int
    working_directory: str | None
    db_path: str
    session_id: str | None
    session_name: str
    agent_id: str | None
    tools: list[str] | None
    heartbeat_ack_max_chars: int
    heartbeat_target: str | None
    heartbeat_model: str | None
    heartbeat_show_alerts: bool
    delegate_timeout_seconds: float
    settings: dict = field(default_factory=dict)
    log_level: str = "INFO"
    log_consumers: list | None = None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def _to_tool_list(value: object) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = value.split(",")
    if not isinstance(value, list):
        return None
    return [str(item).strip() for item in value if str(item).strip()]


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        provider_name=str(config.get("Provider", "anthropic")).strip().lower(),
        model=str(config.get("Model", "claude-sonnet-4-5-20250929")),
        max_tokens=int(config.get("MaxTokens", 8192)),
        temperature=float(config.get("Temperature", 1.0)),
        max_tool_result_chars=int(config.get("MaxToolResultChars", 40_000)),
        max_tool_iterations=int(config.get("MaxToolIterations", 25)),
        working_directory=config.get("WorkingDirectory"),
        db_path=str(config.get("DbPath", ".agent_fleet/fleet.db")),
        session_id=str(config.get("SessionId", "")).strip() or None,
        session_name=str(config.get("SessionName", "")).strip(),
        agent_id=str(config.get("AgentId", "")).strip() or None,
        tools=_to_tool_list(config.get("Tools")),
        heartbeat_ack_max_chars=int(config.get("HeartbeatAckMaxChars", 300)),
        heartbeat_target=str(config.get("HeartbeatTarget", "")).strip() or None,
        heartbeat_model=str(config.get("HeartbeatModel", "")).strip() or None,
        heartbeat_show_alerts=_to_bool(config.get("HeartbeatShowAlerts", True), default=True),
        delegate_timeout_seconds=float(config.get("DelegateTimeoutSeconds", 900)),
        settings=dict(config.get("Settings") or {}),
        log_level=str(config.get("LogLevel", "INFO")),
        log_consumers=config.get("LogConsumers"),
    )


def resolve_runtime_env() -> RuntimeEnv:
    return RuntimeEnv(
        anthropic_api_key=os.environ.get(_ENV_KEYS["anthropic"]) or None,
        openai_api_key=os.environ.get(_ENV_KEYS["openai"]) or None,
        brave_api_key=os.environ.get("BRAVE_API_KEY") or None,
    )
