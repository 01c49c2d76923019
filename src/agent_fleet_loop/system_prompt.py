from __future__ import annotations

from agent_fleet_loop.models import AgentProfile
from agent_fleet_loop.settings import FleetSettings

_DEFAULT_PROMPT = """\
You are a helpful AI assistant working inside an agent fleet. When tools are \
available, use them to accomplish the task instead of describing what you would do.

If a tool call fails, read the error message carefully and try a different approach. \
Never claim to have run a tool you did not actually call.

Be concise in your responses. When you've completed a task, briefly summarize what you did."""


def build_agent_system_prompt(agent: AgentProfile | None, settings: FleetSettings) -> str | None:
    """Global user prompt, soul, system prompt and skills, or None when the agent defines neither prompt."""
    if agent is None or not (agent.system_prompt or agent.soul):
        return None

    parts: list[str] = []
    if settings.user_prompt:
        parts.append(settings.user_prompt)
    if agent.soul:
        parts.append(agent.soul)
    if agent.system_prompt:
        parts.append(agent.system_prompt)
    for skill in agent.skills:
        content = skill.get("content")
        if content:
            parts.append(f"## Skill: {skill.get('name') or 'unnamed'}\n{content}")
    return "\n\n".join(parts)


def build_system_prompt(
    agent: AgentProfile | None,
    settings: FleetSettings,
    *,
    working_directory: str | None = None,
    tool_names: list[str] | None = None,
) -> str:
    prompt = build_agent_system_prompt(agent, settings) or _DEFAULT_PROMPT

    if tool_names:
        prompt += f"\n\nTools available in this session: {', '.join(tool_names)}."

    if working_directory and tool_names:
        prompt += f"""

The session working directory is: {working_directory}
File and shell tools resolve relative paths against it."""

    return prompt
