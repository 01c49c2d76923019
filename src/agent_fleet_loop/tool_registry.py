from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass, field

import httpx
from loguru import logger

from agent_fleet_loop.connectors import ConnectorSender, NullConnectorSender
from agent_fleet_loop.delegate_health import DELEGATE_PROVIDERS
from agent_fleet_loop.storage.memory_notes import MemoryNoteStore
from agent_fleet_loop.tool import Tool
from agent_fleet_loop.tools.connector_message_tool import ConnectorMessageTool
from agent_fleet_loop.tools.delegate_tool import DelegateTool
from agent_fleet_loop.tools.execute_command_tool import ExecuteCommandTool
from agent_fleet_loop.tools.list_files_tool import ListFilesTool
from agent_fleet_loop.tools.memory_tool import MemoryTool
from agent_fleet_loop.tools.read_file_tool import ReadFileTool
from agent_fleet_loop.tools.write_file_tool import WriteFileTool

_HTTP_TIMEOUT_SECONDS = 30
_MAX_REDIRECTS = 5

_HTTP_HEADERS = {
    "User-Agent": "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
}

_DELEGATE_FAMILIES = {
    "claude_code": "delegate_to_claude_code",
    "codex_cli": "delegate_to_codex_cli",
    "opencode_cli": "delegate_to_opencode_cli",
}


@dataclass
class ToolContext:
    working_directory: str | None
    enabled_tools: list[str]
    http_client: httpx.AsyncClient
    connector_sender: ConnectorSender
    session_id: str | None = None
    agent_id: str | None = None
    brave_api_key: str | None = None
    memory_notes: MemoryNoteStore | None = None
    delegate_timeout_seconds: float = 900

    def has(self, *families: str) -> bool:
        return any(f in self.enabled_tools for f in families)


@dataclass(frozen=True)
class ToolGroup:
    enabled: Callable[[ToolContext], bool]
    build: Callable[[ToolContext], list[Tool]]


@dataclass
class ToolSet:
    tools: list[Tool] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._by_name = {t.name: t for t in self.tools}

    @property
    def names(self) -> list[str]:
        return [t.name for t in self.tools]

    def get(self, name: str) -> Tool | None:
        return self._by_name.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __len__(self) -> int:
        return len(self.tools)


def _shell_tools(ctx: ToolContext) -> list[Tool]:
    return [ExecuteCommandTool(ctx.working_directory)]


def _file_tools(ctx: ToolContext) -> list[Tool]:
    tools: list[Tool] = []
    if ctx.has("files", "read_file"):
        tools.append(ReadFileTool(ctx.working_directory))
    if ctx.has("files", "write_file"):
        tools.append(WriteFileTool(ctx.working_directory))
    if ctx.has("files", "list_files"):
        tools.append(ListFilesTool(ctx.working_directory))
    return tools


def _web_fetch_tools(ctx: ToolContext) -> list[Tool]:
    from agent_fleet_loop.tools.web.web_fetch_tool import WebFetchTool

    return [WebFetchTool(ctx.http_client)]


def _web_search_enabled(ctx: ToolContext) -> bool:
    return ctx.has("web_search") and bool(ctx.brave_api_key)


def _web_search_tools(ctx: ToolContext) -> list[Tool]:
    from agent_fleet_loop.tools.web.brave_search_provider import BraveSearchProvider
    from agent_fleet_loop.tools.web.web_search_tool import WebSearchTool

    return [WebSearchTool(BraveSearchProvider(ctx.brave_api_key or "", ctx.http_client))]


def _memory_enabled(ctx: ToolContext) -> bool:
    return ctx.has("memory") and ctx.memory_notes is not None


def _memory_tools(ctx: ToolContext) -> list[Tool]:
    notes = ctx.memory_notes
    return [MemoryTool(notes, agent_id=ctx.agent_id, session_id=ctx.session_id)] if notes else []


def _delegate_tools(ctx: ToolContext) -> list[Tool]:
    return [
        DelegateTool(
            tool_name,
            DELEGATE_PROVIDERS[tool_name],
            working_directory=ctx.working_directory,
            session_id=ctx.session_id,
            timeout_seconds=ctx.delegate_timeout_seconds,
        )
        for family, tool_name in _DELEGATE_FAMILIES.items()
        if ctx.has(family)
    ]


def _connector_tools(ctx: ToolContext) -> list[Tool]:
    return [ConnectorMessageTool(ctx.connector_sender)]


_GROUPS = [
    ToolGroup(enabled=lambda ctx: ctx.has("shell"), build=_shell_tools),
    ToolGroup(enabled=lambda ctx: ctx.has("files", "read_file", "write_file", "list_files"), build=_file_tools),
    ToolGroup(enabled=lambda ctx: ctx.has("web_fetch"), build=_web_fetch_tools),
    ToolGroup(enabled=_web_search_enabled, build=_web_search_tools),
    ToolGroup(enabled=_memory_enabled, build=_memory_tools),
    ToolGroup(enabled=lambda ctx: ctx.has(*_DELEGATE_FAMILIES), build=_delegate_tools),
    ToolGroup(enabled=lambda ctx: ctx.has("manage_connectors"), build=_connector_tools),
]


class ToolSetBuilder:
    """Turns a session's enabled tool families into invocable tools for one turn."""

    def __init__(
        self,
        *,
        brave_api_key: str | None = None,
        memory_notes: MemoryNoteStore | None = None,
        connector_sender: ConnectorSender | None = None,
        delegate_timeout_seconds: float = 900,
    ):
        self._brave_api_key = brave_api_key
        self._memory_notes = memory_notes
        self._connector_sender = connector_sender or NullConnectorSender()
        self._delegate_timeout_seconds = delegate_timeout_seconds

    @asynccontextmanager
    async def build(
        self,
        working_directory: str | None,
        enabled_tools: list[str],
        *,
        session_id: str | None = None,
        agent_id: str | None = None,
    ) -> AsyncIterator[ToolSet]:
        async with httpx.AsyncClient(
            headers=_HTTP_HEADERS,
            timeout=_HTTP_TIMEOUT_SECONDS,
            follow_redirects=True,
            max_redirects=_MAX_REDIRECTS,
        ) as client:
            ctx = ToolContext(
                working_directory=working_directory,
                enabled_tools=list(enabled_tools),
                http_client=client,
                connector_sender=self._connector_sender,
                session_id=session_id,
                agent_id=agent_id,
                brave_api_key=self._brave_api_key,
                memory_notes=self._memory_notes,
                delegate_timeout_seconds=self._delegate_timeout_seconds,
            )
            tools: list[Tool] = []
            for group in _GROUPS:
                if group.enabled(ctx):
                    tools.extend(group.build(ctx))
            logger.debug(f"Tool set for session {session_id}: {', '.join(t.name for t in tools) or '(none)'}")
            yield ToolSet(tools)
