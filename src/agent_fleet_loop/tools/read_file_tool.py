from typing import Any

from agent_fleet_loop.tools.paths import resolve_in_workdir

_MAX_FILE_CHARS = 100_000


class ReadFileTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return "Read a text file from the session working directory."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file, relative to the working directory",
                },
            },
            "required": ["path"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        try:
            file_path = resolve_in_workdir(self._working_directory, str(tool_input["path"]))
            content = file_path.read_text(encoding="utf-8")
        except Exception as ex:
            return f"Error reading file: {ex}"

        if len(content) > _MAX_FILE_CHARS:
            return content[:_MAX_FILE_CHARS] + f"\n\n[truncated at {_MAX_FILE_CHARS:,} of {len(content):,} chars]"
        return content
