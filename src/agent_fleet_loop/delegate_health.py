"""Advisory health table for delegate backends.

Used only to reorder candidates; a failing delegate stays eligible.
"""

from __future__ import annotations

import shutil
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, replace

_MAX_FAILURES = 50
_COOLDOWN_BASE_SECONDS = 10.0
_COOLDOWN_MAX_SECONDS = 300.0
_BINARY_CHECK_TTL_SECONDS = 30.0

DELEGATE_PROVIDERS = {
    "delegate_to_claude_code": "claude-cli",
    "delegate_to_codex_cli": "codex-cli",
    "delegate_to_opencode_cli": "opencode-cli",
}

DELEGATE_BINARIES = {
    "delegate_to_claude_code": "claude",
    "delegate_to_codex_cli": "codex",
    "delegate_to_opencode_cli": "opencode",
}


@dataclass(frozen=True)
class DelegateHealthEntry:
    failures: int = 0
    last_error: str | None = None
    last_failure_at: float | None = None
    last_success_at: float | None = None
    cooldown_until: float | None = None


def cooldown_seconds(failures: int) -> float:
    clamped = max(1, min(8, failures))
    return min(_COOLDOWN_MAX_SECONDS, _COOLDOWN_BASE_SECONDS * (2 ** (clamped - 1)))


def provider_for(candidate: str) -> str:
    return DELEGATE_PROVIDERS.get(candidate, candidate)


class _CachedBinaryProbe:
    def __init__(self, clock: Callable[[], float]) -> None:
        self._clock = clock
        self._cache: dict[str, tuple[float, bool]] = {}

    def __call__(self, binary: str) -> bool:
        now = self._clock()
        cached = self._cache.get(binary)
        if cached and now - cached[0] < _BINARY_CHECK_TTL_SECONDS:
            return cached[1]
        ok = shutil.which(binary) is not None
        self._cache[binary] = (now, ok)
        return ok


class DelegateHealthTable:
    """Per-backend failure/success signal shared by all turns.

    Keys are provider ids (``claude-cli``); delegate tool names are mapped to
    their provider id. Lost updates between concurrent turns are tolerated.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] = time.time,
        binary_probe: Callable[[str], bool] | None = None,
    ) -> None:
        self._clock = clock
        self._binary_probe = binary_probe or _CachedBinaryProbe(clock)
        self._states: dict[str, DelegateHealthEntry] = {}
        self._lock = threading.Lock()

    def mark_failure(self, candidate: str, reason: str) -> None:
        key = provider_for(candidate)
        now = self._clock()
        with self._lock:
            previous = self._states.get(key, DelegateHealthEntry())
            failures = min(_MAX_FAILURES, previous.failures + 1)
            self._states[key] = replace(
                previous,
                failures=failures,
                last_error=reason[:500],
                last_failure_at=now,
                cooldown_until=now + cooldown_seconds(failures),
            )

    def mark_success(self, candidate: str) -> None:
        key = provider_for(candidate)
        with self._lock:
            previous = self._states.get(key, DelegateHealthEntry())
            self._states[key] = replace(previous, failures=0, last_success_at=self._clock(), cooldown_until=None)

    def entry(self, candidate: str) -> DelegateHealthEntry:
        with self._lock:
            return self._states.get(provider_for(candidate), DelegateHealthEntry())

    def is_cooling_down(self, candidate: str) -> bool:
        cooldown_until = self.entry(candidate).cooldown_until
        return cooldown_until is not None and self._clock() < cooldown_until

    def score(self, candidate: str) -> float:
        """Higher is healthier: a recent success adds, failures and cooldown subtract."""
        entry = self.entry(candidate)
        score = -float(entry.failures)
        if entry.last_success_at is not None and (
            entry.last_failure_at is None or entry.last_success_at >= entry.last_failure_at
        ):
            score += 1.0
        if self.is_cooling_down(candidate):
            score -= _MAX_FAILURES
        return score

    def _binary_available(self, candidate: str) -> bool:
        binary = DELEGATE_BINARIES.get(candidate)
        if binary is None:
            return True
        return self._binary_probe(binary)

    def rank(self, candidates: list[str]) -> list[str]:
        """Stable-sort candidates by health without dropping any of them."""
        deduped = list(dict.fromkeys(candidates))
        return sorted(
            deduped,
            key=lambda candidate: (not self._binary_available(candidate), -self.score(candidate)),
        )

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            states = dict(self._states)
        return {
            key: {
                "failures": entry.failures,
                "last_error": entry.last_error,
                "last_failure_at": entry.last_failure_at,
                "last_success_at": entry.last_success_at,
                "cooling_down": entry.cooldown_until is not None and self._clock() < entry.cooldown_until,
            }
            for key, entry in states.items()
        }
