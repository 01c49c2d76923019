import asyncio
import io
import unittest
from contextlib import redirect_stdout
from types import SimpleNamespace

from agent_fleet_loop.__main__ import HEARTBEAT_PROMPT, FleetRepl
from agent_fleet_loop.models import HeartbeatConfig, TurnResult
from agent_fleet_loop.settings import FleetSettings
from agent_fleet_loop.stream_events import DELTA, WARNING, StreamEvent


class _OrchestratorFake:
    def __init__(self, result: TurnResult, events=()):
        self.result = result
        self.events = list(events)
        self.requests = []

    async def execute_turn(self, request):
        self.requests.append(request)
        for event in self.events:
            request.on_event(event)
        return self.result


def _runtime(orchestrator, session=None):
    return SimpleNamespace(
        orchestrator=orchestrator,
        session_id="s1",
        heartbeat=HeartbeatConfig(target="ops:alerts"),
        heartbeat_model="small",
        health=SimpleNamespace(snapshot=lambda: {}),
        sessions=SimpleNamespace(load=lambda session_id: session),
        settings=SimpleNamespace(load=lambda: FleetSettings(capability_blocked_tools=["shell"])),
        execution_log=SimpleNamespace(list_for_session=lambda session_id, limit=5: []),
    )


class FleetReplTests(unittest.TestCase):
    def _capture(self, coro) -> str:
        buffer = io.StringIO()
        with redirect_stdout(buffer):
            asyncio.run(coro)
        return buffer.getvalue()

    def test_streamed_text_is_not_printed_twice(self) -> None:
        orchestrator = _OrchestratorFake(
            TurnResult(session_id="s1", text="Hello!", persisted=True),
            [StreamEvent(t=DELTA, text="Hello!"), StreamEvent(t=WARNING, text="careful")],
        )
        output = self._capture(FleetRepl(_runtime(orchestrator)).run_turn("hi"))

        self.assertEqual(1, output.count("Hello!"))
        self.assertIn("[warning] careful", output)
        self.assertFalse(orchestrator.requests[0].internal)

    def test_appended_notice_is_printed(self) -> None:
        orchestrator = _OrchestratorFake(
            TurnResult(session_id="s1", text="Done.\n\nTool execution notice: x", persisted=True),
            [StreamEvent(t=DELTA, text="Done.")],
        )
        output = self._capture(FleetRepl(_runtime(orchestrator)).run_turn("hi"))
        self.assertIn("Tool execution notice: x", output)

    def test_heartbeat_command_runs_internal_turn(self) -> None:
        orchestrator = _OrchestratorFake(TurnResult(session_id="s1", text="", persisted=False))
        repl = FleetRepl(_runtime(orchestrator))

        output = self._capture(repl.router.try_handle("/heartbeat"))

        request = orchestrator.requests[0]
        self.assertEqual((True, "heartbeat", HEARTBEAT_PROMPT), (request.internal, request.source, request.message))
        self.assertEqual("small", request.model_override)
        self.assertEqual("ops:alerts", request.heartbeat.target)
        self.assertIn("heartbeat (suppressed): (empty)", output)

    def test_policy_and_health_commands(self) -> None:
        session = SimpleNamespace(tools=["shell", "files"])
        repl = FleetRepl(_runtime(_OrchestratorFake(None), session))

        output = self._capture(repl.router.try_handle("/policy"))
        self.assertIn("Enabled: files", output)
        self.assertIn("Blocked: shell (blocked by explicit policy rule)", output)

        self.assertIn("No delegate health recorded yet.", self._capture(repl.router.try_handle("/health")))


if __name__ == "__main__":
    unittest.main()
