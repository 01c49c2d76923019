from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field


class CancelScope:
    """Owned cancellation scope for one turn.

    Aborting sets ``event`` (which backends may poll cooperatively) and
    cancels the bound task, if any. Safe to call from any thread.
    """

    def __init__(self) -> None:
        self.event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def cancelled(self) -> bool:
        return self.event.is_set()

    def bind(self, task: asyncio.Task) -> None:
        self._task = task
        self._loop = task.get_loop()

    def unbind(self) -> None:
        self._task = None

    def abort(self) -> None:
        loop = self._loop
        if loop is not None and loop.is_running():
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is not loop:
                loop.call_soon_threadsafe(self._abort_in_loop)
                return
        self._abort_in_loop()

    def _abort_in_loop(self) -> None:
        self.event.set()
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def link(self, caller_event: asyncio.Event) -> None:
        """Abort this scope once the caller's event is set."""
        await caller_event.wait()
        self.abort()


@dataclass
class RunHandle:
    session_id: str
    run_id: str | None
    source: str
    scope: CancelScope = field(default_factory=CancelScope)

    def kill(self) -> None:
        self.scope.abort()


class RunRegistry:
    """Active runs keyed by session id, for cancel-by-session-id."""

    def __init__(self) -> None:
        self._runs: dict[str, RunHandle] = {}
        self._lock = threading.Lock()

    def register(self, handle: RunHandle) -> None:
        with self._lock:
            self._runs[handle.session_id] = handle

    def deregister(self, handle: RunHandle) -> None:
        with self._lock:
            if self._runs.get(handle.session_id) is handle:
                del self._runs[handle.session_id]

    def get(self, session_id: str) -> RunHandle | None:
        with self._lock:
            return self._runs.get(session_id)

    def cancel(self, session_id: str) -> bool:
        handle = self.get(session_id)
        if handle is None:
            return False
        handle.kill()
        return True

    def active_session_ids(self) -> list[str]:
        with self._lock:
            return list(self._runs)
