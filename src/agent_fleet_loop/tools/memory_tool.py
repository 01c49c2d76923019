import sqlite3
from typing import Any

from agent_fleet_loop.storage.memory_notes import MemoryNoteStore

_PREVIEW_CHARS = 200


class MemoryTool:
    def __init__(self, notes: MemoryNoteStore, *, agent_id: str | None, session_id: str | None):
        self._notes = notes
        self._agent_id = agent_id
        self._session_id = session_id

    @property
    def name(self) -> str:
        return "memory_tool"

    @property
    def description(self) -> str:
        return (
            "Store and retrieve long-term notes that persist across sessions. "
            'Use action "store" (title + content), "search" (query) or "list".'
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": ["store", "search", "list"]},
                "title": {"type": "string", "description": "Note title (store)"},
                "content": {"type": "string", "description": "Note body (store)"},
                "category": {"type": "string", "description": 'Category, defaults to "note" (store)'},
                "query": {"type": "string", "description": "Text to look for (search)"},
            },
            "required": ["action"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        action = str(tool_input.get("action", "")).strip().lower()
        try:
            if action == "store":
                content = str(tool_input.get("content", "")).strip()
                if not content:
                    return "Error: content is required for store"
                note = self._notes.add(
                    agent_id=self._agent_id,
                    session_id=self._session_id,
                    category=str(tool_input.get("category") or "note"),
                    title=str(tool_input.get("title") or "Untitled").strip(),
                    content=content,
                )
                return f'Memory stored: "{note.title}" (id: {note.id})'
            if action == "search":
                query = str(tool_input.get("query") or tool_input.get("title") or "").strip()
                if not query:
                    return "Error: query is required for search"
                notes = self._notes.search(query, agent_id=self._agent_id)
            elif action == "list":
                if not self._agent_id:
                    return "Error: list requires an agent-owned session"
                notes = self._notes.list_for_agent(self._agent_id)
            else:
                return f'Error: unknown action "{action}". Use store, search or list.'
        except sqlite3.Error as ex:
            return f"Error: memory store unavailable: {ex}"

        if not notes:
            return "No memories found."
        return "\n---\n".join(f"[{n.id}] ({n.category}) {n.title}: {n.content[:_PREVIEW_CHARS]}" for n in notes)
