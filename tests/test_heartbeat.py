import unittest

from agent_fleet_loop.heartbeat import KEEP, STRIP, SUPPRESS, classify, strip_main_loop_meta, strip_sentinel


class HeartbeatClassifyTests(unittest.TestCase):
    def test_exact_sentinel_is_suppressed(self) -> None:
        self.assertEqual(SUPPRESS, classify("  HEARTBEAT_OK\n", 300))

    def test_short_remainder_is_suppressed(self) -> None:
        self.assertEqual(SUPPRESS, classify("HEARTBEAT_OK - all quiet", 300))

    def test_long_remainder_is_stripped(self) -> None:
        text = "HEARTBEAT_OK " + "The deploy failed twice overnight. " * 5
        self.assertEqual(STRIP, classify(text, 50))
        self.assertNotIn("HEARTBEAT_OK", strip_sentinel(text))

    def test_no_sentinel_is_kept(self) -> None:
        self.assertEqual(KEEP, classify("Disk usage is at 95%.", 300))

    def test_sentinel_match_is_case_insensitive(self) -> None:
        self.assertEqual(SUPPRESS, classify("heartbeat_ok", 0))


class MainLoopMetaTests(unittest.TestCase):
    def test_internal_runs_drop_marker_lines(self) -> None:
        text = "Progress made.\n[MAIN_LOOP_META] {\"status\":\"ok\"}\n[MAIN_LOOP_PLAN] next"
        self.assertEqual("Progress made.", strip_main_loop_meta(text, internal=True))

    def test_chat_runs_are_untouched(self) -> None:
        text = "[MAIN_LOOP_META] keep me"
        self.assertEqual(text, strip_main_loop_meta(text, internal=False))


if __name__ == "__main__":
    unittest.main()
