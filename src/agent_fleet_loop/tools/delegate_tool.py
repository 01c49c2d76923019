from typing import Any

from loguru import logger

from agent_fleet_loop import cli_runner

_MAX_OUTPUT_CHARS = 20_000

_LABELS = {
    "claude-cli": "Claude Code",
    "codex-cli": "Codex CLI",
    "opencode-cli": "OpenCode CLI",
}


class DelegateTool:
    """Hands a task to a coding CLI running in the session working directory."""

    def __init__(
        self,
        tool_name: str,
        provider_id: str,
        *,
        working_directory: str | None,
        session_id: str | None = None,
        timeout_seconds: float = 900,
    ):
        self._tool_name = tool_name
        self._provider_id = provider_id
        self._cwd = working_directory
        self._session_id = session_id
        self._timeout = timeout_seconds

    @property
    def name(self) -> str:
        return self._tool_name

    @property
    def description(self) -> str:
        label = _LABELS.get(self._provider_id, self._provider_id)
        return (
            f"Delegate a complex coding task to {label}. Use for multi-file changes, "
            "refactors or running tests. The task runs in the session working directory."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "task": {
                    "type": "string",
                    "description": "Detailed description of the task",
                },
                "resumeId": {
                    "type": "string",
                    "description": "Delegate session id to resume",
                },
            },
            "required": ["task"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        task = str(tool_input.get("task", "")).strip()
        if not task:
            return "Error: task must not be empty"
        label = _LABELS.get(self._provider_id, self._provider_id)
        resume_id = str(tool_input.get("resumeId") or "").strip() or None

        argv, stdin_text = cli_runner.build_command(self._provider_id, task, resume_token=resume_id)
        logger.info(f"{self._tool_name} start: session={self._session_id} cwd={self._cwd} task={task[:200]!r}")
        try:
            result = await cli_runner.run_cli(argv, cwd=self._cwd, stdin_text=stdin_text, timeout=self._timeout)
        except FileNotFoundError:
            return f"Error: {label} binary '{argv[0]}' was not found on PATH"
        except OSError as ex:
            return f"Error: failed to start {label}: {ex}"

        if result.timed_out:
            return f"Error: {label} timed out after {self._timeout:.0f}s"

        reply = cli_runner.parse_output(result.stdout)
        if result.returncode != 0 or not reply.text:
            parts = [f"Error: {label} exited with code {result.returncode}."]
            if result.stderr.strip():
                parts.append(f"stderr:\n{cli_runner.tail(result.stderr)}")
            if result.stdout.strip():
                parts.append(f"stdout:\n{cli_runner.tail(result.stdout)}")
            return "\n\n".join(parts)

        text = reply.text[:_MAX_OUTPUT_CHARS]
        if reply.resume_token:
            text += f"\n\n[delegate_meta]\nresume_id={reply.resume_token}"
        return text
