import asyncio
import unittest

from agent_fleet_loop.storage import FleetStore, MemoryNoteStore
from agent_fleet_loop.tool_registry import ToolSetBuilder


def _names(builder: ToolSetBuilder, enabled: list[str]) -> list[str]:
    async def run() -> list[str]:
        async with builder.build("/tmp", enabled, session_id="s1", agent_id="a1") as tool_set:
            return tool_set.names

    return asyncio.run(run())


class ToolSetBuilderTests(unittest.TestCase):
    def test_families_map_to_concrete_tools(self) -> None:
        names = _names(ToolSetBuilder(), ["shell", "files", "web_fetch", "codex_cli", "manage_connectors"])
        self.assertEqual(
            [
                "execute_command",
                "read_file",
                "write_file",
                "list_files",
                "web_fetch",
                "delegate_to_codex_cli",
                "connector_message_tool",
            ],
            names,
        )

    def test_single_file_tool(self) -> None:
        self.assertEqual(["list_files"], _names(ToolSetBuilder(), ["list_files"]))

    def test_web_search_needs_api_key(self) -> None:
        self.assertEqual([], _names(ToolSetBuilder(), ["web_search"]))
        self.assertEqual(["web_search"], _names(ToolSetBuilder(brave_api_key="k"), ["web_search"]))

    def test_memory_needs_note_store(self) -> None:
        self.assertEqual([], _names(ToolSetBuilder(), ["memory"]))
        store = FleetStore(":memory:")
        try:
            self.assertEqual(["memory_tool"], _names(ToolSetBuilder(memory_notes=MemoryNoteStore(store)), ["memory"]))
        finally:
            store.close()

    def test_no_tools(self) -> None:
        self.assertEqual([], _names(ToolSetBuilder(), []))


if __name__ == "__main__":
    unittest.main()
