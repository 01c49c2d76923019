from __future__ import annotations

import re
import sqlite3

from loguru import logger

from agent_fleet_loop.heartbeat import HEARTBEAT_OK
from agent_fleet_loop.models import Session
from agent_fleet_loop.storage.memory_notes import MemoryNoteStore

AUTO_MEMORY_MIN_INTERVAL_SECONDS = 45 * 60
AUTO_MEMORY_CATEGORY = "execution"

_MIN_USER_CHARS = 20
_MIN_RESPONSE_CHARS = 40
_ACK_PATTERN = re.compile(r"^(ok|okay|cool|thanks|thx|got it|nice)[.! ]*$", re.IGNORECASE)


def _collapse(value: str) -> str:
    return re.sub(r"\s+", " ", value or "").strip()


class AutoMemoryGate:
    """Journals worthwhile chat outcomes as memory notes, at most once per interval."""

    def __init__(self, notes: MemoryNoteStore, *, min_interval_seconds: float = AUTO_MEMORY_MIN_INTERVAL_SECONDS):
        self._notes = notes
        self._min_interval_seconds = min_interval_seconds

    def should_journal(
        self,
        session: Session,
        source: str,
        internal: bool,
        user_text: str,
        response_text: str,
        now: float,
    ) -> bool:
        if internal:
            return False
        if source not in ("chat", "connector"):
            return False
        if not session.agent_id or not session.has_tool("memory"):
            return False
        message = (user_text or "").strip()
        response = (response_text or "").strip()
        if len(message) < _MIN_USER_CHARS or len(response) < _MIN_RESPONSE_CHARS:
            return False
        if _ACK_PATTERN.match(message) or response == HEARTBEAT_OK:
            return False
        last = session.last_auto_memory_at or 0
        if last > 0 and now - last < self._min_interval_seconds:
            return False
        return True

    def journal(self, session: Session, user_text: str, response_text: str, source: str, now: float) -> str | None:
        """Store a compact note for this turn and return its id.

        An identical latest note (same title and content) is reused instead of
        duplicated. Storage failures are logged and yield None.
        """
        compact_message = _collapse(user_text)[:220]
        compact_response = _collapse(response_text)[:700]
        title = f"[auto] {compact_message[:90]}"
        content = "\n".join(
            [
                f"source: {source}",
                f"user_request: {compact_message}",
                f"assistant_outcome: {compact_response}",
            ]
        )
        try:
            latest = self._notes.get_latest_by_session_category(session.id, AUTO_MEMORY_CATEGORY)
            if latest and _collapse(latest.title) == _collapse(title) and _collapse(latest.content) == _collapse(content):
                logger.debug(f"Auto-memory note unchanged for session {session.id}; reusing {latest.id}")
                session.last_auto_memory_at = now
                return latest.id
            note = self._notes.add(
                agent_id=session.agent_id,
                session_id=session.id,
                category=AUTO_MEMORY_CATEGORY,
                title=title,
                content=content,
            )
        except sqlite3.Error as ex:
            logger.warning(f"Auto-memory journaling failed for session {session.id}: {ex}")
            return None
        session.last_auto_memory_at = now
        logger.debug(f"Auto-memory note {note.id} stored for session {session.id}")
        return note.id
