import unittest

from agent_fleet_loop.settings import FleetSettings
from agent_fleet_loop.spend_guard import SpendGuard, estimate_cost, start_of_local_day
from agent_fleet_loop.storage import FleetStore, UsageRepository

NOW = start_of_local_day(1_750_000_000.0) + 12 * 3600


class SpendGuardTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FleetStore(":memory:")
        self.usage = UsageRepository(self.store)
        self.guard = SpendGuard(self.usage, clock=lambda: NOW)

    def tearDown(self) -> None:
        self.store.close()

    def _record(self, cost: float, timestamp: float) -> None:
        self.usage.record(
            session_id="s1",
            provider="anthropic",
            model="m",
            input_tokens=10,
            output_tokens=10,
            estimated_cost=cost,
            timestamp=timestamp,
        )

    def test_no_limit_never_trips(self) -> None:
        self._record(500.0, NOW)
        self.assertIsNone(self.guard.check(FleetSettings()))

    def test_only_today_counts(self) -> None:
        self._record(3.0, start_of_local_day(NOW) - 60)
        self._record(0.25, NOW - 10)
        self.assertAlmostEqual(0.25, self.guard.today_spend_usd())
        self.assertIsNone(self.guard.check(FleetSettings(safety_max_daily_spend_usd=1.0)))

    def test_meeting_the_cap_trips(self) -> None:
        self._record(0.5, NOW - 5)
        self._record(0.5, NOW - 1)
        message = self.guard.check(FleetSettings(safety_max_daily_spend_usd=1.0))
        self.assertIsNotNone(message)
        self.assertIn("Safety budget reached", message)


class EstimateCostTests(unittest.TestCase):
    def test_known_and_unknown_models(self) -> None:
        self.assertAlmostEqual(3.0 + 15.0, estimate_cost("claude-sonnet-4-5-20250929", 1_000_000, 1_000_000))
        self.assertEqual(0.0, estimate_cost("some-local-model", 1_000, 1_000))


if __name__ == "__main__":
    unittest.main()
