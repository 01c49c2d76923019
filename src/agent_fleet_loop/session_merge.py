"""Field-level merge of one turn's outcome into the latest stored session.

Only the fields a turn owns are written back, so a concurrent writer's
changes to everything else survive. Resume tokens are last-writer-wins per
backend; messages are appended.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from agent_fleet_loop.models import Message, Session


def normalize_resume_token(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


@dataclass
class SessionPatch:
    resume_tokens: dict[str, str | None] = field(default_factory=dict)
    message: Message | None = None
    auto_memory_at: float | None = None
    last_active_at: float | None = None

    @property
    def empty(self) -> bool:
        return not self.resume_tokens and self.message is None and self.auto_memory_at is None and self.last_active_at is None


def resume_token_changes(before: dict[str, str | None], after: dict[str, str | None]) -> dict[str, str | None]:
    """Tokens this run changed, normalized. Untouched backends are left out."""
    changes: dict[str, str | None] = {}
    for key in set(before) | set(after):
        new_value = normalize_resume_token(after.get(key))
        if normalize_resume_token(before.get(key)) != new_value:
            changes[key] = new_value
    return changes


def merge_session_patch(current: Session, patch: SessionPatch) -> bool:
    """Apply ``patch`` to ``current`` in place. Returns True if anything changed."""
    changed = False
    for key, value in patch.resume_tokens.items():
        normalized = normalize_resume_token(value)
        if current.resume_tokens.get(key) != normalized:
            current.resume_tokens[key] = normalized
            changed = True
    if patch.message is not None:
        current.messages.append(patch.message)
        changed = True
    if patch.auto_memory_at is not None and current.last_auto_memory_at != patch.auto_memory_at:
        current.last_auto_memory_at = patch.auto_memory_at
        changed = True
    if patch.last_active_at is not None:
        current.last_active_at = patch.last_active_at
        changed = True
    return changed
