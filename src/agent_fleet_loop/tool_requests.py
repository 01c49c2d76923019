"""Turns free-text tool conventions into structured ToolCallRequests.

Some backends cannot be made to emit structured tool calls, so users and
models name tools in prose ("use delegate_to_codex_cli with task: ...",
"connector_message_tool action=send message='hi'"). This module is the only
place that reads raw text for tool intent; everything downstream works with
ToolCallRequest.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from agent_fleet_loop.capability_router import DELEGATE_TOOLS

KNOWN_TOOL_NAMES = (
    "delegate_to_claude_code",
    "delegate_to_codex_cli",
    "delegate_to_opencode_cli",
    "connector_message_tool",
    "sessions_tool",
    "whoami_tool",
    "search_history_tool",
    "manage_agents",
    "manage_tasks",
    "manage_schedules",
    "manage_documents",
    "manage_webhooks",
    "manage_skills",
    "manage_connectors",
    "manage_sessions",
    "manage_secrets",
    "memory_tool",
    "browser",
    "web_search",
    "web_fetch",
    "execute_command",
    "read_file",
    "write_file",
    "list_files",
    "copy_file",
    "move_file",
    "delete_file",
    "edit_file",
    "send_file",
    "process_tool",
)

MESSAGE = "message"
RESPONSE = "response"

_KEY_VALUE = re.compile(r"([a-zA-Z_][a-zA-Z0-9_]*)\s*=\s*(\"([^\"]*)\"|'([^']*)'|[^\s,]+)")
_MESSAGE_QUOTED = re.compile(r"message\s*=\s*(\"(.*?)\"|'(.*?)')", re.IGNORECASE)
_MESSAGE_RAW = re.compile(r"message\s*=\s*([^\n]+)", re.IGNORECASE)
_TRAILING_INSTRUCTION = re.compile(r"\b(Return|Output|Then|Respond)\b[\s\S]*$", re.IGNORECASE)
_CONNECTOR_ACTIONS = ("list_running", "list_targets", "send")

_TASK_PATTERNS = (
    re.compile(r"task\s+exactly\s*:\s*\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"task\s+exactly\s*:\s*'([^']+)'", re.IGNORECASE),
    re.compile(r"task\s+exactly\s*:\s*([^\n]+?)(?:\.\s|$)", re.IGNORECASE | re.MULTILINE),
    re.compile(r"task\s*:\s*\"([^\"]+)\"", re.IGNORECASE),
    re.compile(r"task\s*:\s*'([^']+)'", re.IGNORECASE),
    re.compile(r"task\s*:\s*([^\n]+?)(?:\.\s|$)", re.IGNORECASE | re.MULTILINE),
)


@dataclass(frozen=True)
class ToolCallRequest:
    name: str
    args: dict[str, Any]
    origin: str


@dataclass
class ToolRequestScan:
    requested: list[str] = field(default_factory=list)
    calls: list[ToolCallRequest] = field(default_factory=list)


def _name_pattern(name: str) -> re.Pattern[str]:
    return re.compile(rf"(?<![a-z0-9_]){re.escape(name)}(?![a-z0-9_])", re.IGNORECASE)


_NAME_PATTERNS = {name: _name_pattern(name) for name in KNOWN_TOOL_NAMES}


def requested_tool_names(text: str, *, identifiers_only: bool = False) -> list[str]:
    """Known tool names mentioned in ``text``, in canonical order.

    With ``identifiers_only`` plain words such as "browser" are ignored and only
    snake_case identifiers count, which keeps ordinary prose from reading as a
    tool promise.
    """
    found = []
    for name in KNOWN_TOOL_NAMES:
        if identifiers_only and "_" not in name:
            continue
        if _NAME_PATTERNS[name].search(text or ""):
            found.append(name)
    return found


def parse_key_value_args(raw: str) -> dict[str, str]:
    out: dict[str, str] = {}
    for match in _KEY_VALUE.finditer(raw):
        value = match.group(3)
        if value is None:
            value = match.group(4)
        if value is None:
            value = match.group(2)
        out[match.group(1)] = value.strip("'\"").strip()
    return out


def extract_connector_message_args(text: str) -> dict[str, Any] | None:
    if "connector_message_tool" not in text.lower():
        return None
    parsed = parse_key_value_args(text)

    payload = parsed.get("message")
    if not payload:
        quoted = _MESSAGE_QUOTED.search(text)
        if quoted:
            payload = (quoted.group(2) or quoted.group(3) or "").strip()
    if not payload:
        raw = _MESSAGE_RAW.search(text)
        if raw:
            payload = _TRAILING_INSTRUCTION.sub("", raw.group(1)).strip().strip("'\"")

    action = (parsed.get("action") or "send").lower()
    args: dict[str, Any] = {"action": action if action in _CONNECTOR_ACTIONS else "send"}
    for key in ("platform", "connectorId", "to"):
        if parsed.get(key):
            args[key] = parsed[key]
    if payload:
        args["message"] = payload
    return args


def extract_delegation_task(text: str, tool_name: str) -> str | None:
    if tool_name.lower() not in text.lower():
        return None
    for pattern in _TASK_PATTERNS:
        match = pattern.search(text)
        task = (match.group(1) if match else "").strip()
        if task:
            return task
    return None


def _args_after_name(text: str, name: str) -> dict[str, str]:
    """key=value pairs written on the same line, after the tool name."""
    match = _NAME_PATTERNS[name].search(text)
    if not match:
        return {}
    rest = text[match.end():]
    line = rest.split("\n", 1)[0]
    return parse_key_value_args(line)


def _call_for(name: str, text: str, origin: str) -> ToolCallRequest | None:
    if name == "connector_message_tool":
        args = extract_connector_message_args(text)
        return ToolCallRequest(name, args, origin) if args else None
    if name in DELEGATE_TOOLS:
        task = extract_delegation_task(text, name)
        return ToolCallRequest(name, {"task": task}, origin) if task else None
    args = _args_after_name(text, name)
    return ToolCallRequest(name, dict(args), origin) if args else None


def scan(message: str, response: str) -> ToolRequestScan:
    """Tool names requested by the user message or promised by the response, with parsed calls.

    The user's own text takes precedence for argument parsing; the response is
    consulted for names the message did not mention.
    """
    result = ToolRequestScan()
    sources = (
        (MESSAGE, message or "", requested_tool_names(message or "")),
        (RESPONSE, response or "", requested_tool_names(response or "", identifiers_only=True)),
    )
    for origin, text, names in sources:
        for name in names:
            if name in result.requested:
                continue
            result.requested.append(name)
            call = _call_for(name, text, origin)
            if call is not None:
                result.calls.append(call)
    return result

