from pathlib import Path
from typing import Any

from agent_fleet_loop.tools.paths import resolve_in_workdir

_MAX_DEPTH = 3
_MAX_ENTRIES = 500
_SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv"}


class ListFilesTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "list_files"

    @property
    def description(self) -> str:
        return f"List files in the session working directory recursively (max depth {_MAX_DEPTH})."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "dirPath": {
                    "type": "string",
                    "description": "Relative directory to list (defaults to the working directory)",
                },
            },
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        try:
            root = resolve_in_workdir(self._working_directory, str(tool_input.get("dirPath") or "."))
            lines: list[str] = []
            _walk(root, 0, lines)
        except Exception as ex:
            return f"Error listing files: {ex}"

        if not lines:
            return "(empty directory)"
        if len(lines) >= _MAX_ENTRIES:
            lines.append(f"[listing stopped after {_MAX_ENTRIES} entries]")
        return "\n".join(lines)


def _walk(directory: Path, depth: int, lines: list[str]) -> None:
    if depth >= _MAX_DEPTH:
        return
    for entry in sorted(directory.iterdir(), key=lambda p: (not p.is_dir(), p.name.lower())):
        if len(lines) >= _MAX_ENTRIES:
            return
        indent = "  " * depth
        if entry.is_dir():
            if entry.name in _SKIPPED_DIRS:
                continue
            lines.append(f"{indent}{entry.name}/")
            _walk(entry, depth + 1, lines)
        else:
            lines.append(f"{indent}{entry.name}")
