"""Keyword-based intent routing for inbound chat messages.

The cascade is evaluated on the lowercased message and the first matching
intent wins, in this order: coding, outreach, scheduling, browsing, research,
memory, general. A message that mentions both code and memory is coding.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from agent_fleet_loop.settings import FleetSettings

DELEGATE_TOOLS = (
    "delegate_to_claude_code",
    "delegate_to_codex_cli",
    "delegate_to_opencode_cli",
)

_DELEGATE_ALIASES = {
    "claude": "delegate_to_claude_code",
    "codex": "delegate_to_codex_cli",
    "opencode": "delegate_to_opencode_cli",
}

_URL_PATTERN = re.compile(r"https?://[^\s<>\"')]+", re.IGNORECASE)

_CODING_TERMS = (
    "build",
    "implement",
    "create app",
    "refactor",
    "fix bug",
    "write code",
    "codebase",
    "typescript",
    "javascript",
    "react",
    "next.js",
    "unit test",
    "run tests",
    "compile",
    "npm ",
    "pnpm ",
    "yarn ",
)
_OUTREACH_TERMS = ("send update", "message", "whatsapp", "telegram", "slack", "discord", "notify", "broadcast")
_SCHEDULING_TERMS = ("schedule", "every day", "every week", "cron", "recurring", "remind", "follow up tomorrow")
_BROWSING_TERMS = ("browser", "click", "fill form", "log in", "screenshot", "navigate")
_RESEARCH_TERMS = (
    "research",
    "look up",
    "find out",
    "search for",
    "compare",
    "latest",
    "news",
    "wikipedia",
    "summarize this url",
    "analyze website",
)
_MEMORY_TERMS = ("remember", "memory", "recall", "what do we know", "notes")


@dataclass(frozen=True)
class RoutingDecision:
    intent: str
    confidence: float
    preferred_tools: list[str] = field(default_factory=list)
    preferred_delegates: list[str] = field(default_factory=list)
    primary_url: str | None = None


def find_first_url(text: str) -> str | None:
    match = _URL_PATTERN.search(text or "")
    return match.group(0) if match else None


def normalize_delegate_order(value: Iterable[str] | None) -> list[str]:
    """Map configured delegate aliases to delegate tools, appending any missing ones."""
    fallback = list(DELEGATE_TOOLS)
    if not value:
        return fallback
    mapped: list[str] = []
    for raw in value:
        tool = _DELEGATE_ALIASES.get(str(raw).strip().lower())
        if tool and tool not in mapped:
            mapped.append(tool)
    if not mapped:
        return fallback
    return mapped + [tool for tool in fallback if tool not in mapped]


def _contains_any(text: str, terms: Iterable[str]) -> bool:
    return any(term in text for term in terms)


def classify(message: str, enabled_tools: list[str], settings: FleetSettings | None = None) -> RoutingDecision:
    text = (message or "").lower()
    url = find_first_url(message or "")
    delegates = normalize_delegate_order(settings.autonomy_preferred_delegates if settings else None)

    def decision(intent: str, confidence: float, tools: list[str]) -> RoutingDecision:
        return RoutingDecision(
            intent=intent,
            confidence=confidence,
            preferred_tools=tools,
            preferred_delegates=list(delegates),
            primary_url=url,
        )

    if _contains_any(text, _CODING_TERMS):
        return decision("coding", 0.9, ["claude_code", "codex_cli", "opencode_cli", "shell", "files", "edit_file"])
    if _contains_any(text, _OUTREACH_TERMS):
        return decision("outreach", 0.8, ["connector_message_tool", "manage_connectors", "manage_sessions"])
    if _contains_any(text, _SCHEDULING_TERMS):
        return decision("scheduling", 0.75, ["manage_schedules", "manage_tasks"])
    if url and (_contains_any(text, _BROWSING_TERMS) or "browser" in enabled_tools):
        return decision("browsing", 0.7, ["browser", "web_fetch"])
    if _contains_any(text, _RESEARCH_TERMS) or url:
        return decision("research", 0.7, ["web_search", "web_fetch", "browser"])
    if _contains_any(text, _MEMORY_TERMS):
        return decision("memory", 0.65, ["memory_tool"])
    return decision("general", 0.5, [])
