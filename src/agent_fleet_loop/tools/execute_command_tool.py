import asyncio
import platform
import subprocess
from typing import Any

from agent_fleet_loop.tools.paths import resolve_in_workdir

_IS_WINDOWS = platform.system() == "Windows"
_DEFAULT_TIMEOUT_SECONDS = 60
_MAX_TIMEOUT_SECONDS = 900


class ExecuteCommandTool:
    def __init__(self, working_directory: str | None = None):
        self._cwd = working_directory

    @property
    def name(self) -> str:
        return "execute_command"

    @property
    def description(self) -> str:
        return "Execute a shell command in the session working directory and return stdout + stderr."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "command": {
                    "type": "string",
                    "description": "The shell command to execute",
                },
                "timeoutSec": {
                    "type": "number",
                    "description": f"Per-command timeout in seconds (default {_DEFAULT_TIMEOUT_SECONDS})",
                },
                "workdir": {
                    "type": "string",
                    "description": "Relative working directory override",
                },
            },
            "required": ["command"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        command = str(tool_input.get("command", "")).strip()
        if not command:
            return "Error: command must not be empty"
        timeout = _clamp_timeout(tool_input.get("timeoutSec"))

        try:
            cwd = self._cwd
            if tool_input.get("workdir"):
                cwd = str(resolve_in_workdir(self._cwd, str(tool_input["workdir"])))

            if _IS_WINDOWS:
                proc = await asyncio.create_subprocess_shell(
                    f"cmd.exe /c {command}",
                    stdin=subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                    creationflags=subprocess.CREATE_NEW_PROCESS_GROUP,
                )
            else:
                proc = await asyncio.create_subprocess_shell(
                    command,
                    stdin=subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    cwd=cwd,
                )

            try:
                stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
            except asyncio.TimeoutError:
                proc.kill()
                try:
                    await asyncio.wait_for(proc.communicate(), timeout=5)
                except (asyncio.TimeoutError, ProcessLookupError):
                    pass
                return f"Error: command timed out after {timeout}s"

            output = stdout.decode(errors="replace") + stderr.decode(errors="replace")

            if proc.returncode != 0:
                return f"{output}\n[exit code {proc.returncode}]"

            return output.rstrip() or "(no output)"

        except Exception as ex:
            return f"Error executing command: {ex}"


def _clamp_timeout(raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return _DEFAULT_TIMEOUT_SECONDS
    return max(1, min(_MAX_TIMEOUT_SECONDS, value))
