from __future__ import annotations

import re
from dataclasses import dataclass

from agent_fleet_loop.models import ToolEvent

DELTA = "delta"
TOOL_CALL = "tool_call"
TOOL_RESULT = "tool_result"
DONE = "done"
ERR = "err"
WARNING = "warning"

# Failure taxonomy carried on err/warning events.
POLICY_BLOCKED = "policy_blocked"
BUDGET_EXCEEDED = "budget_exceeded"
BACKEND_FAILURE = "backend_failure"
TOOL_FAILURE = "tool_failure"
PROMISED_TOOL_NOT_INVOKED = "promised_tool_not_invoked"
CANCELLED = "cancelled"

_ERROR_PREFIX = re.compile(r"^error:", re.IGNORECASE)


@dataclass(frozen=True)
class StreamEvent:
    t: str
    text: str = ""
    tool_name: str | None = None
    tool_input: str | None = None
    tool_output: str | None = None
    kind: str | None = None


def looks_like_failed_output(output: str) -> bool:
    """Output that reports its own failure: a leading "Error:" or a connection error code."""
    return bool(_ERROR_PREFIX.match(output.strip())) or "ECONNREFUSED" in output or "ETIMEDOUT" in output


def looks_like_tool_error(output: str) -> bool:
    return looks_like_failed_output(output) or "Error:" in output


class ToolEventCollector:
    """Builds ToolEvents from a live event stream.

    A tool_result is matched to the most recent tool_call of the same name that
    has no output yet; unmatched results are dropped.
    """

    def __init__(self) -> None:
        self.events: list[ToolEvent] = []

    def add(self, event: StreamEvent) -> None:
        if event.t == TOOL_CALL:
            self.events.append(ToolEvent(name=event.tool_name or "unknown", input=event.tool_input or ""))
            return
        if event.t != TOOL_RESULT:
            return
        name = event.tool_name or "unknown"
        for pending in reversed(self.events):
            if pending.name == name and pending.output is None:
                output = event.tool_output or ""
                pending.output = output
                pending.error = looks_like_tool_error(output)
                return

    @property
    def called_names(self) -> set[str]:
        return {e.name for e in self.events}
