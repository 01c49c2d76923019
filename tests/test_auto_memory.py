import unittest

from agent_fleet_loop.auto_memory import AUTO_MEMORY_CATEGORY, AUTO_MEMORY_MIN_INTERVAL_SECONDS, AutoMemoryGate
from agent_fleet_loop.models import Session
from agent_fleet_loop.storage import FleetStore, MemoryNoteStore

USER_TEXT = "Build a calculator app and remember the path"
RESPONSE_TEXT = "Created the calculator in ~/projects/calc with add, subtract and tests."


class AutoMemoryGateTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FleetStore(":memory:")
        self.notes = MemoryNoteStore(self.store)
        self.gate = AutoMemoryGate(self.notes)
        self.session = Session(id="s1", agent_id="a1", tools=["memory", "shell"])

    def tearDown(self) -> None:
        self.store.close()

    def _count(self) -> int:
        return self.notes.count_for_session("s1")

    def test_accepts_worthwhile_chat_turn(self) -> None:
        self.assertTrue(self.gate.should_journal(self.session, "chat", False, USER_TEXT, RESPONSE_TEXT, 10_000.0))

    def test_denials(self) -> None:
        no_agent = Session(id="s2", tools=["memory"])
        no_memory = Session(id="s3", agent_id="a1", tools=["shell"])
        cases = [
            (self.session, "chat", True, USER_TEXT, RESPONSE_TEXT),
            (self.session, "heartbeat", False, USER_TEXT, RESPONSE_TEXT),
            (no_agent, "chat", False, USER_TEXT, RESPONSE_TEXT),
            (no_memory, "chat", False, USER_TEXT, RESPONSE_TEXT),
            (self.session, "chat", False, "thanks", RESPONSE_TEXT),
            (self.session, "chat", False, USER_TEXT, "ok"),
            (self.session, "chat", False, USER_TEXT, "HEARTBEAT_OK"),
        ]
        for session, source, internal, user_text, response in cases:
            with self.subTest(source=source, internal=internal, user_text=user_text, response=response):
                self.assertFalse(self.gate.should_journal(session, source, internal, user_text, response, 10_000.0))

    def test_second_journal_within_interval_is_denied(self) -> None:
        now = 10_000.0
        self.assertIsNotNone(self.gate.journal(self.session, USER_TEXT, RESPONSE_TEXT, "chat", now))
        self.assertEqual(now, self.session.last_auto_memory_at)
        self.assertFalse(
            self.gate.should_journal(self.session, "chat", False, USER_TEXT, RESPONSE_TEXT, now + 60)
        )
        self.assertEqual(1, self._count())

    def test_identical_note_after_interval_is_not_duplicated(self) -> None:
        now = 10_000.0
        first = self.gate.journal(self.session, USER_TEXT, RESPONSE_TEXT, "chat", now)
        later = now + AUTO_MEMORY_MIN_INTERVAL_SECONDS + 1
        self.assertTrue(self.gate.should_journal(self.session, "chat", False, USER_TEXT, RESPONSE_TEXT, later))
        second = self.gate.journal(self.session, USER_TEXT, RESPONSE_TEXT, "chat", later)
        self.assertEqual(first, second)
        self.assertEqual(1, self._count())
        self.assertEqual(later, self.session.last_auto_memory_at)

    def test_note_is_compact(self) -> None:
        self.gate.journal(self.session, USER_TEXT, "x" * 2_000, "connector", 10_000.0)
        note = self.notes.get_latest_by_session_category("s1", AUTO_MEMORY_CATEGORY)
        self.assertTrue(note.title.startswith("[auto] Build a calculator"))
        self.assertIn("source: connector", note.content)
        self.assertLess(len(note.content), 1_000)
        self.assertEqual("a1", note.agent_id)


if __name__ == "__main__":
    unittest.main()
