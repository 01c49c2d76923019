from __future__ import annotations

import asyncio
import copy
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from agent_fleet_loop.stream_events import StreamEvent

MAIN_SESSION_NAME = "__main__"


@dataclass
class ToolEvent:
    name: str
    input: str
    output: str | None = None
    error: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"name": self.name, "input": self.input}
        if self.output is not None:
            data["output"] = self.output
        if self.error:
            data["error"] = True
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolEvent:
        return cls(
            name=str(data.get("name", "unknown")),
            input=str(data.get("input", "")),
            output=data.get("output"),
            error=bool(data.get("error", False)),
        )


@dataclass
class Message:
    role: str
    text: str
    time: float
    image_path: str | None = None
    image_url: str | None = None
    tool_events: list[ToolEvent] = field(default_factory=list)
    kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "text": self.text, "time": self.time}
        if self.image_path:
            data["imagePath"] = self.image_path
        if self.image_url:
            data["imageUrl"] = self.image_url
        if self.tool_events:
            data["toolEvents"] = [e.to_dict() for e in self.tool_events]
        if self.kind:
            data["kind"] = self.kind
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        return cls(
            role=str(data.get("role", "user")),
            text=str(data.get("text", "")),
            time=float(data.get("time", 0) or 0),
            image_path=data.get("imagePath"),
            image_url=data.get("imageUrl"),
            tool_events=[ToolEvent.from_dict(e) for e in data.get("toolEvents") or []],
            kind=data.get("kind"),
        )


@dataclass
class MainLoopState:
    """Autonomous-mission status for the distinguished main session."""

    status: str = "idle"
    goal: str | None = None
    updated_at: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"status": self.status, "goal": self.goal, "updatedAt": self.updated_at}

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> MainLoopState | None:
        if not isinstance(data, dict):
            return None
        return cls(
            status=str(data.get("status") or "idle"),
            goal=data.get("goal"),
            updated_at=data.get("updatedAt"),
        )


@dataclass
class Session:
    id: str
    name: str = ""
    cwd: str | None = None
    provider: str = "claude-cli"
    model: str = ""
    credential_id: str | None = None
    api_endpoint: str | None = None
    agent_id: str | None = None
    tools: list[str] | None = None
    messages: list[Message] = field(default_factory=list)
    resume_tokens: dict[str, str | None] = field(default_factory=dict)
    main_loop_state: MainLoopState | None = None
    created_at: float = 0.0
    last_active_at: float | None = None
    last_auto_memory_at: float | None = None

    @property
    def is_main(self) -> bool:
        return self.name == MAIN_SESSION_NAME

    def has_tool(self, tool_name: str) -> bool:
        return bool(self.tools) and tool_name in self.tools

    def copy(self) -> Session:
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "cwd": self.cwd,
            "provider": self.provider,
            "model": self.model,
            "credentialId": self.credential_id,
            "apiEndpoint": self.api_endpoint,
            "agentId": self.agent_id,
            "tools": list(self.tools) if self.tools is not None else None,
            "messages": [m.to_dict() for m in self.messages],
            "resumeTokens": dict(self.resume_tokens),
            "mainLoopState": self.main_loop_state.to_dict() if self.main_loop_state else None,
            "createdAt": self.created_at,
            "lastActiveAt": self.last_active_at,
            "lastAutoMemoryAt": self.last_auto_memory_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Session:
        tools = data.get("tools")
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            cwd=data.get("cwd"),
            provider=str(data.get("provider") or "claude-cli"),
            model=str(data.get("model") or ""),
            credential_id=data.get("credentialId"),
            api_endpoint=data.get("apiEndpoint"),
            agent_id=data.get("agentId"),
            tools=[str(t) for t in tools] if isinstance(tools, list) else None,
            messages=[Message.from_dict(m) for m in data.get("messages") or []],
            resume_tokens=dict(data.get("resumeTokens") or {}),
            main_loop_state=MainLoopState.from_dict(data.get("mainLoopState")),
            created_at=float(data.get("createdAt") or 0),
            last_active_at=data.get("lastActiveAt"),
            last_auto_memory_at=data.get("lastAutoMemoryAt"),
        )


@dataclass
class AgentProfile:
    id: str
    name: str = ""
    provider: str | None = None
    model: str | None = None
    credential_id: str | None = None
    api_endpoint: str | None = None
    tools: list[str] = field(default_factory=list)
    system_prompt: str = ""
    soul: str = ""
    skills: list[dict[str, str]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AgentProfile:
        return cls(
            id=str(data["id"]),
            name=str(data.get("name") or ""),
            provider=data.get("provider"),
            model=data.get("model"),
            credential_id=data.get("credentialId"),
            api_endpoint=data.get("apiEndpoint"),
            tools=[str(t) for t in data.get("tools") or []],
            system_prompt=str(data.get("systemPrompt") or ""),
            soul=str(data.get("soul") or ""),
            skills=list(data.get("skills") or []),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "model": self.model,
            "credentialId": self.credential_id,
            "apiEndpoint": self.api_endpoint,
            "tools": list(self.tools),
            "systemPrompt": self.system_prompt,
            "soul": self.soul,
            "skills": list(self.skills),
        }


@dataclass(frozen=True)
class MemoryNote:
    id: str
    agent_id: str | None
    session_id: str | None
    category: str
    title: str
    content: str
    created_at: str


@dataclass
class HeartbeatConfig:
    ack_max_chars: int = 300
    show_ok: bool = False
    show_alerts: bool = True
    target: str | None = None


@dataclass
class TurnRequest:
    session_id: str
    message: str
    image_path: str | None = None
    image_url: str | None = None
    internal: bool = False
    source: str = "chat"
    run_id: str | None = None
    cancel_event: asyncio.Event | None = None
    on_event: Callable[[StreamEvent], None] | None = None
    model_override: str | None = None
    heartbeat: HeartbeatConfig | None = None

    @property
    def is_heartbeat(self) -> bool:
        return self.internal and self.source == "heartbeat"

    @property
    def is_user_chat(self) -> bool:
        return not self.internal and self.source == "chat"


@dataclass
class TurnResult:
    session_id: str
    text: str
    persisted: bool
    tool_events: list[ToolEvent] = field(default_factory=list)
    error: str | None = None
    run_id: str | None = None
