from __future__ import annotations

from collections.abc import Awaitable, Callable


class CommandRouter:
    def __init__(
        self,
        *,
        on_help: Callable[[], Awaitable[None]],
        on_heartbeat: Callable[[str], Awaitable[None]],
        on_health: Callable[[], Awaitable[None]],
        on_policy: Callable[[], Awaitable[None]],
        on_session: Callable[[str], Awaitable[None]],
        on_unknown: Callable[[str], None],
    ) -> None:
        self._on_help = on_help
        self._on_heartbeat = on_heartbeat
        self._on_health = on_health
        self._on_policy = on_policy
        self._on_session = on_session
        self._on_unknown = on_unknown

    async def try_handle(self, user_message: str) -> bool:
        trimmed = user_message.strip()
        if not trimmed.startswith("/"):
            return False

        command, _, rest = trimmed.partition(" ")
        if command == "/help":
            await self._on_help()
            return True
        if command == "/heartbeat":
            await self._on_heartbeat(rest.strip())
            return True
        if command == "/health":
            await self._on_health()
            return True
        if command == "/policy":
            await self._on_policy()
            return True
        if command == "/session":
            await self._on_session(rest.strip())
            return True

        self._on_unknown(trimmed)
        return True
