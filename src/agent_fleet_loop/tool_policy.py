"""Capability policy: which session tool families may run, and why others may not."""

from __future__ import annotations

from dataclasses import dataclass, field

from agent_fleet_loop.settings import FleetSettings


@dataclass(frozen=True)
class ToolDescriptor:
    categories: tuple[str, ...]
    concrete_tools: tuple[str, ...]
    destructive: bool = False


TOOL_DESCRIPTORS: dict[str, ToolDescriptor] = {
    "shell": ToolDescriptor(("execution",), ("execute_command",)),
    "process": ToolDescriptor(("execution",), ("process_tool",)),
    "files": ToolDescriptor(("filesystem",), ("read_file", "write_file", "list_files", "send_file")),
    "read_file": ToolDescriptor(("filesystem",), ("read_file",)),
    "write_file": ToolDescriptor(("filesystem",), ("write_file",)),
    "list_files": ToolDescriptor(("filesystem",), ("list_files",)),
    "send_file": ToolDescriptor(("filesystem",), ("send_file",)),
    "copy_file": ToolDescriptor(("filesystem",), ("copy_file",)),
    "move_file": ToolDescriptor(("filesystem",), ("move_file",)),
    "edit_file": ToolDescriptor(("filesystem",), ("edit_file",)),
    "delete_file": ToolDescriptor(("filesystem",), ("delete_file",), destructive=True),
    "web_search": ToolDescriptor(("network",), ("web_search",)),
    "web_fetch": ToolDescriptor(("network",), ("web_fetch",)),
    "browser": ToolDescriptor(("browser", "network"), ("browser",)),
    "claude_code": ToolDescriptor(("delegation", "execution"), ("delegate_to_claude_code",)),
    "codex_cli": ToolDescriptor(("delegation", "execution"), ("delegate_to_codex_cli",)),
    "opencode_cli": ToolDescriptor(("delegation", "execution"), ("delegate_to_opencode_cli",)),
    "memory": ToolDescriptor(("memory",), ("memory_tool", "context_status", "context_summarize")),
    "manage_agents": ToolDescriptor(("platform",), ("manage_agents",)),
    "manage_tasks": ToolDescriptor(("platform",), ("manage_tasks",)),
    "manage_schedules": ToolDescriptor(("platform",), ("manage_schedules",)),
    "manage_skills": ToolDescriptor(("platform",), ("manage_skills",)),
    "manage_documents": ToolDescriptor(("platform",), ("manage_documents",)),
    "manage_webhooks": ToolDescriptor(("platform", "network"), ("manage_webhooks",)),
    "manage_connectors": ToolDescriptor(("platform", "outbound"), ("manage_connectors", "connector_message_tool")),
    "manage_sessions": ToolDescriptor(
        ("platform",), ("manage_sessions", "sessions_tool", "search_history_tool", "whoami_tool")
    ),
    "manage_secrets": ToolDescriptor(("platform",), ("manage_secrets",)),
}

CONCRETE_TO_FAMILIES: dict[str, list[str]] = {}
for _family, _descriptor in TOOL_DESCRIPTORS.items():
    for _concrete in _descriptor.concrete_tools:
        CONCRETE_TO_FAMILIES.setdefault(_concrete, []).append(_family)


@dataclass(frozen=True)
class BlockedTool:
    tool: str
    reason: str
    source: str


@dataclass
class ToolPolicy:
    mode: str
    requested_tools: list[str] = field(default_factory=list)
    enabled_tools: list[str] = field(default_factory=list)
    blocked_tools: list[BlockedTool] = field(default_factory=list)

    def blocked_reason(self, family: str) -> str | None:
        for entry in self.blocked_tools:
            if entry.tool == family:
                return entry.reason
        return None

    def summary(self) -> str:
        return ", ".join(f"{entry.tool} ({entry.reason})" for entry in self.blocked_tools)


def _family_matches(names: set[str], family: str, descriptor: ToolDescriptor | None) -> bool:
    if family in names:
        return True
    if descriptor is None:
        return False
    return any(concrete in names for concrete in descriptor.concrete_tools)


def _category_reason(blocked_categories: set[str], descriptor: ToolDescriptor | None) -> str | None:
    if descriptor is None:
        return None
    for category in descriptor.categories:
        if category in blocked_categories:
            return f'blocked by policy category "{category}"'
    return None


def _mode_reason(mode: str, descriptor: ToolDescriptor | None) -> str | None:
    if mode == "strict":
        return "blocked by strict policy (not in allow-list)"
    if mode == "balanced" and descriptor is not None and descriptor.destructive:
        return "blocked by balanced policy (destructive tool)"
    return None


def resolve(session_tools: list[str] | None, settings: FleetSettings | None) -> ToolPolicy:
    """Resolve the tool families a session may use for one run.

    Check order per family: safety block, allow-list, explicit block, blocked
    category, mode. The allow-list overrides everything except safety blocks.
    """
    settings = settings or FleetSettings()
    safety_blocked = set(settings.safety_blocked_tools)
    blocked_names = set(settings.capability_blocked_tools)
    allowed_names = set(settings.capability_allowed_tools)
    blocked_categories = set(settings.capability_blocked_categories)

    requested: list[str] = []
    for tool in session_tools or []:
        name = tool.strip().lower() if isinstance(tool, str) else ""
        if name and name not in requested:
            requested.append(name)

    policy = ToolPolicy(mode=settings.capability_policy_mode, requested_tools=requested)
    for family in requested:
        descriptor = TOOL_DESCRIPTORS.get(family)
        if _family_matches(safety_blocked, family, descriptor):
            policy.blocked_tools.append(BlockedTool(family, "blocked by safety policy", "safety"))
            continue
        if family in allowed_names:
            policy.enabled_tools.append(family)
            continue
        if _family_matches(blocked_names, family, descriptor):
            policy.blocked_tools.append(BlockedTool(family, "blocked by explicit policy rule", "policy"))
            continue
        reason = _category_reason(blocked_categories, descriptor) or _mode_reason(policy.mode, descriptor)
        if reason:
            policy.blocked_tools.append(BlockedTool(family, reason, "policy"))
            continue
        policy.enabled_tools.append(family)
    return policy


def block_concrete_invocation(tool_name: str, policy: ToolPolicy, settings: FleetSettings | None) -> str | None:
    """Re-check policy for a forced call to a concrete tool. Returns a reason, or None if allowed."""
    name = tool_name.strip().lower() if isinstance(tool_name, str) else ""
    if not name:
        return "invalid tool name"
    settings = settings or FleetSettings()
    safety_blocked = set(settings.safety_blocked_tools)
    blocked_names = set(settings.capability_blocked_tools)
    allowed_names = set(settings.capability_allowed_tools)

    if name in safety_blocked:
        return "blocked by safety policy"
    families = CONCRETE_TO_FAMILIES.get(name, [])
    for family in families:
        if family in safety_blocked:
            return f'blocked because "{family}" is safety-blocked'
    if name in blocked_names:
        return "blocked by explicit policy rule"
    for family in families:
        if family in blocked_names and family not in allowed_names:
            return f'blocked because "{family}" is policy-blocked'
    if not families or any(family in policy.enabled_tools for family in families):
        return None
    for family in families:
        reason = policy.blocked_reason(family)
        if reason:
            return reason
    return f'tool family "{families[0]}" is not enabled for this session'
