from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

_POLICY_MODES = {"permissive", "balanced", "strict"}


def _normalize_name(value: object) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def _normalize_list(value: object) -> list[str]:
    if not isinstance(value, (list, tuple, set)):
        return []
    names: list[str] = []
    for entry in value:
        name = _normalize_name(entry)
        if name and name not in names:
            names.append(name)
    return names


def _pick(data: dict[str, Any], camel: str, snake: str) -> Any:
    if camel in data:
        return data[camel]
    return data.get(snake)


def parse_usd_limit(value: object) -> float | None:
    """Parse a spend cap. Missing, invalid or non-positive values mean "no cap"."""
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        parsed = float(value)
    elif isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(parsed) or parsed <= 0:
        return None
    return max(0.01, min(1_000_000.0, parsed))


@dataclass
class FleetSettings:
    capability_policy_mode: str = "permissive"
    capability_blocked_tools: list[str] = field(default_factory=list)
    capability_allowed_tools: list[str] = field(default_factory=list)
    capability_blocked_categories: list[str] = field(default_factory=list)
    safety_blocked_tools: list[str] = field(default_factory=list)
    safety_max_daily_spend_usd: float | None = None
    autonomy_preferred_delegates: list[str] = field(default_factory=list)
    user_prompt: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> FleetSettings:
        data = data if isinstance(data, dict) else {}
        mode = _normalize_name(_pick(data, "capabilityPolicyMode", "capability_policy_mode"))
        return cls(
            capability_policy_mode=mode if mode in _POLICY_MODES else "permissive",
            capability_blocked_tools=_normalize_list(_pick(data, "capabilityBlockedTools", "capability_blocked_tools")),
            capability_allowed_tools=_normalize_list(_pick(data, "capabilityAllowedTools", "capability_allowed_tools")),
            capability_blocked_categories=_normalize_list(
                _pick(data, "capabilityBlockedCategories", "capability_blocked_categories")
            ),
            safety_blocked_tools=_normalize_list(_pick(data, "safetyBlockedTools", "safety_blocked_tools")),
            safety_max_daily_spend_usd=parse_usd_limit(_pick(data, "safetyMaxDailySpendUsd", "safety_max_daily_spend_usd")),
            autonomy_preferred_delegates=_normalize_list(
                _pick(data, "autonomyPreferredDelegates", "autonomy_preferred_delegates")
            ),
            user_prompt=str(_pick(data, "userPrompt", "user_prompt") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "capabilityPolicyMode": self.capability_policy_mode,
            "capabilityBlockedTools": list(self.capability_blocked_tools),
            "capabilityAllowedTools": list(self.capability_allowed_tools),
            "capabilityBlockedCategories": list(self.capability_blocked_categories),
            "safetyBlockedTools": list(self.safety_blocked_tools),
            "safetyMaxDailySpendUsd": self.safety_max_daily_spend_usd,
            "autonomyPreferredDelegates": list(self.autonomy_preferred_delegates),
            "userPrompt": self.user_prompt,
        }
