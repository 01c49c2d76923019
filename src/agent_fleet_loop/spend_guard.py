from __future__ import annotations

import math
import time
from collections.abc import Callable
from datetime import datetime

from loguru import logger

from agent_fleet_loop.settings import FleetSettings
from agent_fleet_loop.storage.usage import UsageRepository

# USD per 1M tokens: (input, output)
MODEL_COSTS: dict[str, tuple[float, float]] = {
    "claude-opus-4-6": (15, 75),
    "claude-sonnet-4-6": (3, 15),
    "claude-haiku-4-5-20251001": (0.8, 4),
    "claude-sonnet-4-5-20250514": (3, 15),
    "claude-sonnet-4-5-20250929": (3, 15),
    "gpt-4o": (2.5, 10),
    "gpt-4o-mini": (0.15, 0.6),
    "gpt-4.1": (2, 8),
    "gpt-4.1-mini": (0.4, 1.6),
    "gpt-4.1-nano": (0.1, 0.4),
    "o3": (10, 40),
    "o3-mini": (1.1, 4.4),
    "o4-mini": (1.1, 4.4),
}


def estimate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    rates = MODEL_COSTS.get(model)
    if rates is None:
        return 0.0
    input_rate, output_rate = rates
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def start_of_local_day(now: float) -> float:
    moment = datetime.fromtimestamp(now)
    return moment.replace(hour=0, minute=0, second=0, microsecond=0).timestamp()


class SpendGuard:
    """Daily spend circuit breaker, evaluated before any provider call."""

    def __init__(self, usage: UsageRepository, *, clock: Callable[[], float] = time.time):
        self._usage = usage
        self._clock = clock

    def today_spend_usd(self) -> float:
        since = start_of_local_day(self._clock())
        total = 0.0
        for record in self._usage.load_since(since):
            cost = record.estimated_cost
            if math.isfinite(cost) and cost > 0:
                total += cost
        return total

    def check(self, settings: FleetSettings) -> str | None:
        """Return a user-facing error when today's spend meets the cap, else None."""
        limit = settings.safety_max_daily_spend_usd
        if limit is None:
            return None
        spent = self.today_spend_usd()
        if spent < limit:
            return None
        logger.warning(f"Daily spend cap reached: ${spent:.4f} >= ${limit:.4f}")
        return (
            f"Safety budget reached: today's spend is ${spent:.4f} (limit ${limit:.4f}). "
            "Increase safetyMaxDailySpendUsd to continue autonomous runs."
        )
