from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from agent_fleet_loop.app_config import AppConfig, RuntimeEnv
from agent_fleet_loop.auto_memory import AutoMemoryGate
from agent_fleet_loop.backend import BackendResolver, CliBackend, ProviderChatBackend
from agent_fleet_loop.connectors import ConnectorSender, NullConnectorSender
from agent_fleet_loop.delegate_health import DelegateHealthTable
from agent_fleet_loop.logging_config import setup_logging
from agent_fleet_loop.models import HeartbeatConfig, Session
from agent_fleet_loop.run_registry import RunRegistry
from agent_fleet_loop.spend_guard import SpendGuard
from agent_fleet_loop.storage import (
    AgentRepository,
    CredentialRepository,
    ExecutionLog,
    FleetStore,
    MemoryNoteStore,
    SessionRepository,
    SettingsRepository,
    UsageRepository,
)
from agent_fleet_loop.tool_loop import ToolLoopBackend
from agent_fleet_loop.tool_registry import ToolSetBuilder
from agent_fleet_loop.turn_orchestrator import TurnOrchestrator


@dataclass
class AppRuntime:
    orchestrator: TurnOrchestrator
    store: FleetStore
    sessions: SessionRepository
    settings: SettingsRepository
    execution_log: ExecutionLog
    health: DelegateHealthTable
    runs: RunRegistry
    session_id: str
    heartbeat: HeartbeatConfig
    heartbeat_model: str | None
    log_descriptions: list[str]

    def close(self) -> None:
        self.store.close()


def _open_session(sessions: SessionRepository, app: AppConfig) -> Session:
    if app.session_id:
        existing = sessions.load(app.session_id)
        if existing is not None:
            logger.info(f"Resuming session {existing.id}")
            return existing
    session = sessions.create(
        session_id=app.session_id,
        name=app.session_name,
        provider=app.provider_name,
        model=app.model,
        agent_id=app.agent_id,
        tools=app.tools,
        cwd=app.working_directory,
    )
    logger.info(f"Created session {session.id} ({session.provider})")
    return session


def bootstrap_runtime(
    app: AppConfig,
    env: RuntimeEnv,
    *,
    connector_sender: ConnectorSender | None = None,
) -> AppRuntime:
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    db_path = app.db_path
    if db_path != ":memory:" and not Path(db_path).is_absolute():
        db_path = str(Path.cwd() / db_path)
    store = FleetStore(db_path)

    sessions = SessionRepository(store)
    settings = SettingsRepository(store)
    usage = UsageRepository(store)
    notes = MemoryNoteStore(store)
    execution_log = ExecutionLog(store)
    if app.settings:
        settings.save(app.settings)

    session = _open_session(sessions, app)
    sender = connector_sender or NullConnectorSender()

    backends = BackendResolver(
        chat=ProviderChatBackend(usage=usage, max_tokens=app.max_tokens, temperature=app.temperature),
        tool_loop=ToolLoopBackend(
            usage=usage,
            max_tokens=app.max_tokens,
            temperature=app.temperature,
            max_tool_result_chars=app.max_tool_result_chars,
            max_tool_iterations=app.max_tool_iterations,
        ),
        cli=CliBackend(timeout_seconds=app.delegate_timeout_seconds),
    )
    tool_builder = ToolSetBuilder(
        brave_api_key=env.brave_api_key,
        memory_notes=notes,
        connector_sender=sender,
        delegate_timeout_seconds=app.delegate_timeout_seconds,
    )
    health = DelegateHealthTable()
    runs = RunRegistry()

    orchestrator = TurnOrchestrator(
        sessions=sessions,
        agents=AgentRepository(store),
        credentials=CredentialRepository(store),
        settings=settings,
        backends=backends,
        tool_builder=tool_builder,
        health=health,
        runs=runs,
        spend_guard=SpendGuard(usage),
        memory_gate=AutoMemoryGate(notes),
        connector_sender=sender,
        execution_log=execution_log,
        env_keys=env.provider_keys(),
    )

    return AppRuntime(
        orchestrator=orchestrator,
        store=store,
        sessions=sessions,
        settings=settings,
        execution_log=execution_log,
        health=health,
        runs=runs,
        session_id=session.id,
        heartbeat=HeartbeatConfig(
            ack_max_chars=app.heartbeat_ack_max_chars,
            show_alerts=app.heartbeat_show_alerts,
            target=app.heartbeat_target,
        ),
        heartbeat_model=app.heartbeat_model,
        log_descriptions=log_descriptions,
    )
