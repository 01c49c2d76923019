import unittest

from agent_fleet_loop.delegate_health import DelegateHealthTable, cooldown_seconds

CLAUDE = "delegate_to_claude_code"
CODEX = "delegate_to_codex_cli"
OPENCODE = "delegate_to_opencode_cli"


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class DelegateHealthTableTests(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = _Clock()
        self.available = {"claude", "codex", "opencode"}
        self.table = DelegateHealthTable(clock=self.clock, binary_probe=lambda binary: binary in self.available)

    def test_rank_keeps_configured_order_when_all_healthy(self) -> None:
        self.assertEqual([CODEX, CLAUDE, OPENCODE], self.table.rank([CODEX, CLAUDE, OPENCODE]))

    def test_rank_prefers_recent_success_and_never_drops_candidates(self) -> None:
        self.table.mark_success(CODEX)
        self.table.mark_failure(OPENCODE, "crashed")
        ranked = self.table.rank([OPENCODE, CLAUDE, CODEX])
        self.assertEqual([CODEX, CLAUDE, OPENCODE], ranked)

    def test_missing_binary_is_deprioritised(self) -> None:
        self.available.discard("claude")
        self.assertEqual([CODEX, CLAUDE], self.table.rank([CLAUDE, CODEX]))

    def test_failure_starts_cooldown_that_expires(self) -> None:
        self.table.mark_failure(CLAUDE, "timeout")
        self.assertTrue(self.table.is_cooling_down(CLAUDE))
        self.clock.now += cooldown_seconds(1) + 1
        self.assertFalse(self.table.is_cooling_down(CLAUDE))
        self.assertEqual(1, self.table.entry(CLAUDE).failures)

    def test_success_resets_failures(self) -> None:
        self.table.mark_failure(CLAUDE, "a")
        self.table.mark_failure(CLAUDE, "b")
        self.table.mark_success(CLAUDE)
        entry = self.table.entry(CLAUDE)
        self.assertEqual(0, entry.failures)
        self.assertEqual("b", entry.last_error)

    def test_delegate_names_share_state_with_provider_ids(self) -> None:
        self.table.mark_failure("claude-cli", "main backend failed")
        self.assertEqual(1, self.table.entry(CLAUDE).failures)
        self.assertIn("claude-cli", self.table.snapshot())

    def test_cooldown_backoff_is_capped(self) -> None:
        self.assertEqual(10.0, cooldown_seconds(1))
        self.assertEqual(20.0, cooldown_seconds(2))
        self.assertEqual(300.0, cooldown_seconds(50))


if __name__ == "__main__":
    unittest.main()
