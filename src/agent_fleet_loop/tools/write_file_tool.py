from typing import Any

from agent_fleet_loop.tools.paths import resolve_in_workdir


class WriteFileTool:
    def __init__(self, working_directory: str | None = None):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return "Write content to a file in the session working directory. Creates directories if needed."

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "path": {
                    "type": "string",
                    "description": "Path to the file, relative to the working directory",
                },
                "content": {
                    "type": "string",
                    "description": "The content to write",
                },
            },
            "required": ["path", "content"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        path = str(tool_input["path"])
        content = str(tool_input.get("content", ""))
        try:
            file_path = resolve_in_workdir(self._working_directory, path)
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")
            return f"File written: {path} ({len(content)} bytes)"
        except Exception as ex:
            return f"Error writing file: {ex}"
