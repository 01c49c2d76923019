from __future__ import annotations

import re

HEARTBEAT_OK = "HEARTBEAT_OK"

SUPPRESS = "suppress"
STRIP = "strip"
KEEP = "keep"

_SENTINEL_PATTERN = re.compile(re.escape(HEARTBEAT_OK), re.IGNORECASE)
_MAIN_LOOP_MARKERS = ("[MAIN_LOOP_META]", "[MAIN_LOOP_PLAN]", "[MAIN_LOOP_REVIEW]")


def classify(response_text: str, ack_max_chars: int) -> str:
    """Decide how a heartbeat reply is persisted: suppress, strip or keep."""
    trimmed = (response_text or "").strip()
    if trimmed == HEARTBEAT_OK:
        return SUPPRESS
    if not _SENTINEL_PATTERN.search(trimmed):
        return KEEP
    remainder = strip_sentinel(trimmed)
    if len(remainder) <= ack_max_chars:
        return SUPPRESS
    return STRIP


def strip_sentinel(text: str) -> str:
    return _SENTINEL_PATTERN.sub("", text).strip()


def strip_main_loop_meta(text: str, internal: bool) -> str:
    """Drop main-loop bookkeeping lines from internal run output."""
    if not internal or not text:
        return text or ""
    lines = [line for line in text.split("\n") if not any(marker in line for marker in _MAIN_LOOP_MARKERS)]
    return "\n".join(lines).strip()
