from agent_fleet_loop.storage.agents import AgentRepository, CredentialRecord, CredentialRepository
from agent_fleet_loop.storage.execution_log import ExecutionLog
from agent_fleet_loop.storage.memory_notes import MemoryNoteStore
from agent_fleet_loop.storage.sessions import SessionRepository
from agent_fleet_loop.storage.settings_store import SettingsRepository
from agent_fleet_loop.storage.store import FleetStore
from agent_fleet_loop.storage.usage import UsageRecord, UsageRepository

__all__ = [
    "AgentRepository",
    "CredentialRecord",
    "CredentialRepository",
    "ExecutionLog",
    "FleetStore",
    "MemoryNoteStore",
    "SessionRepository",
    "SettingsRepository",
    "UsageRecord",
    "UsageRepository",
]
