import asyncio
import unittest
from contextlib import asynccontextmanager

from agent_fleet_loop.auto_memory import AutoMemoryGate
from agent_fleet_loop.backend import BackendError, BackendResolver
from agent_fleet_loop.delegate_health import DelegateHealthTable
from agent_fleet_loop.models import AgentProfile, HeartbeatConfig, MainLoopState, Message, Session, TurnRequest
from agent_fleet_loop.run_registry import RunRegistry
from agent_fleet_loop.spend_guard import SpendGuard
from agent_fleet_loop.storage import (
    AgentRepository,
    CredentialRepository,
    ExecutionLog,
    FleetStore,
    MemoryNoteStore,
    SessionRepository,
    SettingsRepository,
    UsageRepository,
)
from agent_fleet_loop.stream_events import (
    BACKEND_FAILURE,
    BUDGET_EXCEEDED,
    CANCELLED,
    DELTA,
    ERR,
    POLICY_BLOCKED,
    PROMISED_TOOL_NOT_INVOKED,
    WARNING,
    StreamEvent,
)
from agent_fleet_loop.tool_registry import ToolSet
from agent_fleet_loop.turn_orchestrator import RUN_CANCELLED, TurnOrchestrator, sync_from_agent

NOW = 1_000_000.0


def _add_heartbeat_message(session: Session) -> bool:
    session.messages.append(Message(role="assistant", text="All quiet.", time=NOW - 60, kind="heartbeat"))
    return True


def _set_main_loop_ok(session: Session) -> bool:
    session.main_loop_state = MainLoopState(status="ok")
    return True


class FakeTool:
    def __init__(self, name, result="ok", *, error=None, call_log=None):
        self.name = name
        self.description = f"fake {name}"
        self.input_schema = {"type": "object", "properties": {}}
        self.inputs = []
        self._result = result
        self._error = error
        self._call_log = call_log

    async def execute(self, tool_input):
        self.inputs.append(tool_input)
        if self._call_log is not None:
            self._call_log.append(self.name)
        if self._error is not None:
            raise self._error
        return self._result


class CallbackTool(FakeTool):
    """FakeTool that runs ``on_execute`` before returning its result."""

    def __init__(self, name, result="ok", *, on_execute, call_log=None):
        super().__init__(name, result, call_log=call_log)
        self._on_execute = on_execute

    async def execute(self, tool_input):
        self._on_execute()
        return await super().execute(tool_input)


class FakeToolBuilder:
    def __init__(self, tools=None):
        self.tools = list(tools or [])
        self.enabled = []

    @asynccontextmanager
    async def build(self, working_directory, enabled_tools, *, session_id=None, agent_id=None):
        self.enabled.append(list(enabled_tools))
        yield ToolSet(list(self.tools))


class FakeConnectorSender:
    def __init__(self):
        self.sent = []

    def list_running(self):
        return []

    async def send_message(self, *, connector_id, channel_id, text):
        self.sent.append((connector_id, channel_id, text))


class FakeBackend:
    def __init__(self, reply="", *, error=None, block=False):
        self.reply = reply
        self.error = error
        self.block = block
        self.requests = []
        self.started = None

    async def invoke(self, request, on_event):
        self.requests.append(request)
        if self.started is not None:
            self.started.set()
        if self.block:
            await asyncio.sleep(30)
        if self.error is not None:
            raise self.error
        if self.reply:
            on_event(StreamEvent(t=DELTA, text=self.reply))
        return self.reply


class ResumingBackend(FakeBackend):
    """Records a resume token for the session's provider while another writer updates the stored session."""

    def __init__(self, reply, token, concurrent_write):
        super().__init__(reply)
        self.token = token
        self.concurrent_write = concurrent_write

    async def invoke(self, request, on_event):
        self.concurrent_write()
        request.session.resume_tokens[request.session.provider] = self.token
        return await super().invoke(request, on_event)


def _set_codex_token(session: Session) -> bool:
    session.resume_tokens["codex-cli"] = "codex-thread-9"
    return True


class TurnOrchestratorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.store = FleetStore(":memory:")
        self.sessions = SessionRepository(self.store)
        self.agents = AgentRepository(self.store)
        self.settings = SettingsRepository(self.store)
        self.usage = UsageRepository(self.store)
        self.notes = MemoryNoteStore(self.store)
        self.execution_log = ExecutionLog(self.store)
        self.health = DelegateHealthTable(clock=lambda: NOW, binary_probe=lambda binary: True)
        self.runs = RunRegistry()
        self.backend = FakeBackend("Hello from the model.")
        self.tool_builder = FakeToolBuilder()
        self.events = []
        self.connector_sender = None

    def tearDown(self) -> None:
        self.store.close()

    def _orchestrator(self) -> TurnOrchestrator:
        return TurnOrchestrator(
            sessions=self.sessions,
            agents=self.agents,
            credentials=CredentialRepository(self.store),
            settings=self.settings,
            backends=BackendResolver(chat=self.backend, tool_loop=self.backend, cli=self.backend),
            tool_builder=self.tool_builder,
            health=self.health,
            runs=self.runs,
            spend_guard=SpendGuard(self.usage),
            memory_gate=AutoMemoryGate(self.notes),
            connector_sender=self.connector_sender,
            execution_log=self.execution_log,
            clock=lambda: NOW,
        )

    def _session(self, tools=None, **kwargs) -> Session:
        return self.sessions.create(session_id="s1", provider="ollama", tools=tools, **kwargs)

    def _run(self, message: str, **kwargs):
        request = TurnRequest(session_id="s1", message=message, on_event=self.events.append, **kwargs)
        return asyncio.run(self._orchestrator().execute_turn(request))

    def _events(self, t: str, kind: str) -> list[StreamEvent]:
        return [e for e in self.events if e.t == t and e.kind == kind]

    def test_missing_session_raises(self) -> None:
        with self.assertRaises(ValueError):
            self._run("hello there")

    def test_plain_chat_persists_user_and_assistant(self) -> None:
        self._session()
        result = self._run("hello there")

        self.assertIsNone(result.error)
        self.assertTrue(result.persisted)
        self.assertEqual("Hello from the model.", result.text)
        stored = self.sessions.load("s1")
        self.assertEqual(["user", "assistant"], [m.role for m in stored.messages])
        self.assertEqual("chat", stored.messages[1].kind)
        self.assertEqual(NOW, stored.last_active_at)
        self.assertEqual(0, self.health.entry("ollama").failures)
        self.assertEqual(
            ["trigger", "persisted"],
            [e["type"] for e in reversed(self.execution_log.list_for_session("s1"))],
        )

    def test_history_excludes_the_current_message(self) -> None:
        self._session()
        self._run("first question")
        self._run("second question")

        history = self.backend.requests[-1].history
        self.assertEqual(["first question", "Hello from the model."], [h["content"] for h in history])
        self.assertEqual("second question", self.backend.requests[-1].message)

    def test_heartbeat_ack_is_not_persisted(self) -> None:
        self._session()
        self.sessions.update("s1", _add_heartbeat_message)
        self.backend.reply = "HEARTBEAT_OK"
        result = self._run("check in", internal=True, source="heartbeat", heartbeat=HeartbeatConfig())

        self.assertFalse(result.persisted)
        stored = self.sessions.load("s1")
        self.assertEqual(["heartbeat"], [m.kind for m in stored.messages])
        self.assertIsNone(stored.last_active_at)

    def test_heartbeat_with_content_strips_sentinel(self) -> None:
        self._session()
        self.backend.reply = "HEARTBEAT_OK " + "The nightly build is failing on main. " * 20
        result = self._run("check in", internal=True, source="heartbeat", heartbeat=HeartbeatConfig(ack_max_chars=50))

        self.assertTrue(result.persisted)
        stored = self.sessions.load("s1").messages[-1]
        self.assertEqual("heartbeat", stored.kind)
        self.assertNotIn("HEARTBEAT_OK", stored.text)

    def test_heartbeat_alert_is_routed_to_target(self) -> None:
        self._session()
        self.connector_sender = FakeConnectorSender()
        self.backend.reply = "Disk usage on the build host is above ninety percent."
        config = HeartbeatConfig(target="ops:alerts")

        result = self._run("check in", internal=True, source="heartbeat", heartbeat=config)

        self.assertTrue(result.persisted)
        self.assertEqual([("ops", "alerts", self.backend.reply)], self.connector_sender.sent)

    def test_status_only_heartbeat_runs_without_tools(self) -> None:
        self._session(tools=["web_fetch"], name="__main__")
        self.sessions.update("s1", _set_main_loop_ok)
        self.backend.reply = "HEARTBEAT_OK"
        self._run("status?", internal=True, source="heartbeat", heartbeat=HeartbeatConfig(), model_override="small")

        request = self.backend.requests[0]
        self.assertIsNone(request.tools)
        self.assertEqual("small", request.model)
        self.assertEqual([[]], self.tool_builder.enabled)

    def test_backend_failure_without_delegates(self) -> None:
        self._session()
        self.backend.error = BackendError("provider unavailable")
        result = self._run("hello there")

        self.assertEqual("provider unavailable", result.error)
        self.assertEqual("Error: provider unavailable", result.text)
        self.assertTrue(result.persisted)
        self.assertEqual(1, self.health.entry("ollama").failures)
        self.assertEqual("provider unavailable", self._events(ERR, BACKEND_FAILURE)[0].text)

    def test_missing_required_key_is_a_backend_failure(self) -> None:
        self.sessions.create(session_id="s1", provider="anthropic")
        result = self._run("hello there")

        self.assertEqual("No API key configured for this session", result.error)
        self.assertEqual([], self.backend.requests)

    def test_spend_guard_blocks_before_backend(self) -> None:
        self._session()
        self.settings.save({"safetyMaxDailySpendUsd": 1})
        self.usage.record(
            session_id="other",
            provider="anthropic",
            model="m",
            input_tokens=1,
            output_tokens=1,
            estimated_cost=2.5,
        )
        result = self._run("hello there")

        self.assertEqual([], self.backend.requests)
        self.assertIn("Safety budget reached", result.error)
        self.assertEqual(1, len(self._events(ERR, BUDGET_EXCEEDED)))
        self.assertEqual(["assistant"], [m.role for m in self.sessions.load("s1").messages])

    def test_policy_block_is_reported_once_and_tool_never_runs(self) -> None:
        self._session(tools=["web_fetch", "memory"])
        self.settings.save({"capabilityBlockedTools": ["web_fetch"]})
        web_fetch = FakeTool("web_fetch", "page body")
        self.tool_builder.tools = [web_fetch]
        self.backend.reply = "I will call web_fetch url=https://example.com"

        result = self._run("please check this")

        self.assertEqual([], web_fetch.inputs)
        self.assertEqual([["memory"]], self.tool_builder.enabled)
        warnings = self._events(WARNING, POLICY_BLOCKED)
        self.assertEqual(1, len(warnings))
        self.assertIn("web_fetch", warnings[0].text)
        self.assertIn("Tool execution notice:", result.text)

    def test_forced_delegate_from_user_message(self) -> None:
        self._session(tools=["codex_cli"])
        codex = FakeTool("delegate_to_codex_cli", "Added the flag.\n\n[delegate_meta] exit=0")
        self.tool_builder.tools = [codex]
        self.backend.reply = "Sure."

        result = self._run('use delegate_to_codex_cli with task: "add a --verbose option"')

        self.assertEqual([{"task": "add a --verbose option"}], codex.inputs)
        self.assertEqual("Added the flag.", result.text)
        self.assertEqual(["delegate_to_codex_cli"], [e.name for e in result.tool_events])
        self.assertEqual(1, self.health.score("delegate_to_codex_cli"))

    def test_missed_tool_notice(self) -> None:
        self._session()
        self.backend.reply = "Done."
        result = self._run("please use web_search for this")

        self.assertEqual(
            "Done.\n\nTool execution notice: requested tool(s) web_search were not actually invoked in this run.",
            result.text,
        )
        self.assertEqual(1, len(self._events(WARNING, PROMISED_TOOL_NOT_INVOKED)))

    def test_research_auto_routes_to_web_fetch(self) -> None:
        self._session(tools=["web_fetch"])
        web_fetch = FakeTool("web_fetch", "Fetched page text")
        self.tool_builder.tools = [web_fetch]
        self.backend.reply = "Looking."

        result = self._run("research https://example.com/page")

        self.assertEqual([{"url": "https://example.com/page"}], web_fetch.inputs)
        self.assertEqual("Fetched page text", result.text)

    def test_coding_intent_auto_delegates(self) -> None:
        self._session(tools=["claude_code"])
        claude = FakeTool("delegate_to_claude_code", "Refactored the module.")
        self.tool_builder.tools = [claude]
        self.backend.reply = "I can help with that."

        result = self._run("refactor the parser module")

        self.assertEqual([{"task": "refactor the parser module"}], claude.inputs)
        self.assertEqual("Refactored the module.", result.text)

    def test_failover_follows_health_order(self) -> None:
        self._session(tools=["claude_code", "codex_cli", "opencode_cli"])
        self.health.mark_success("delegate_to_codex_cli")
        self.health.mark_failure("delegate_to_opencode_cli", "crashed")
        calls = []
        self.tool_builder.tools = [
            FakeTool("delegate_to_claude_code", "Error: rate limited", call_log=calls),
            FakeTool("delegate_to_codex_cli", error=RuntimeError("spawn failed"), call_log=calls),
            FakeTool("delegate_to_opencode_cli", "Answered by opencode.", call_log=calls),
        ]
        self.backend.error = BackendError("primary down")

        result = self._run("hello there")

        self.assertEqual(["delegate_to_codex_cli", "delegate_to_claude_code", "delegate_to_opencode_cli"], calls)
        self.assertIsNone(result.error)
        self.assertEqual("Answered by opencode.", result.text)
        self.assertEqual(1, self.health.entry("delegate_to_claude_code").failures)
        self.assertEqual(0, self.health.entry("delegate_to_opencode_cli").failures)

    def test_cancellation_by_session_id(self) -> None:
        self._session()
        self.backend.block = True

        async def scenario():
            self.backend.started = asyncio.Event()
            orchestrator = self._orchestrator()
            task = asyncio.create_task(
                orchestrator.execute_turn(TurnRequest(session_id="s1", message="hello there", on_event=self.events.append))
            )
            await self.backend.started.wait()
            cancelled = self.runs.cancel("s1")
            return cancelled, await task

        cancelled, result = asyncio.run(scenario())

        self.assertTrue(cancelled)
        self.assertEqual(RUN_CANCELLED, result.error)
        self.assertEqual("", result.text)
        self.assertFalse(result.persisted)
        self.assertEqual(1, len(self._events(ERR, CANCELLED)))
        self.assertEqual(["user"], [m.role for m in self.sessions.load("s1").messages])
        self.assertEqual([], self.runs.active_session_ids())

    def test_cancellation_by_caller_event(self) -> None:
        self._session()
        self.backend.block = True

        async def scenario():
            self.backend.started = asyncio.Event()
            cancel_event = asyncio.Event()
            task = asyncio.create_task(
                self._orchestrator().execute_turn(
                    TurnRequest(session_id="s1", message="hello there", on_event=self.events.append, cancel_event=cancel_event)
                )
            )
            await self.backend.started.wait()
            cancel_event.set()
            return await task

        result = asyncio.run(scenario())

        self.assertEqual(RUN_CANCELLED, result.error)
        self.assertEqual("", result.text)
        self.assertFalse(result.persisted)
        self.assertEqual(1, len(self._events(ERR, CANCELLED)))
        self.assertEqual(["user"], [m.role for m in self.sessions.load("s1").messages])
        self.assertEqual([], self.runs.active_session_ids())

    def test_cancel_by_session_id_during_failover_stops_next_delegate(self) -> None:
        self._session(tools=["claude_code", "codex_cli"])
        self.health.mark_success("delegate_to_codex_cli")
        calls = []
        found = []
        self.tool_builder.tools = [
            CallbackTool(
                "delegate_to_codex_cli",
                "Error: interrupted",
                on_execute=lambda: found.append(self.runs.cancel("s1")),
                call_log=calls,
            ),
            FakeTool("delegate_to_claude_code", "Claude answered.", call_log=calls),
        ]
        self.backend.error = BackendError("primary down")

        result = self._run("hello there")

        self.assertEqual([True], found)
        self.assertEqual(["delegate_to_codex_cli"], calls)
        self.assertEqual(RUN_CANCELLED, result.error)
        self.assertEqual("", result.text)
        self.assertFalse(result.persisted)
        self.assertEqual(["user"], [m.role for m in self.sessions.load("s1").messages])
        self.assertEqual([], self.runs.active_session_ids())

    def test_caller_event_during_failover_stops_next_delegate(self) -> None:
        self._session(tools=["claude_code", "codex_cli"])
        self.health.mark_success("delegate_to_codex_cli")
        cancel_event = asyncio.Event()
        calls = []
        self.tool_builder.tools = [
            CallbackTool("delegate_to_codex_cli", "Error: interrupted", on_execute=cancel_event.set, call_log=calls),
            FakeTool("delegate_to_claude_code", "Claude answered.", call_log=calls),
        ]
        self.backend.error = BackendError("primary down")

        result = self._run("hello there", cancel_event=cancel_event)

        self.assertEqual(["delegate_to_codex_cli"], calls)
        self.assertEqual(RUN_CANCELLED, result.error)
        self.assertEqual("", result.text)
        self.assertEqual(1, len(self._events(ERR, CANCELLED)))
        self.assertEqual([], self.runs.active_session_ids())

    def test_successful_delegate_mentioning_an_error_type_is_not_failed_over(self) -> None:
        self._session(tools=["claude_code", "codex_cli"])
        calls = []
        reply = "Fixed the TypeError: 'NoneType' in parser.py; all tests pass."
        self.tool_builder.tools = [
            FakeTool("delegate_to_claude_code", reply, call_log=calls),
            FakeTool("delegate_to_codex_cli", reply, call_log=calls),
        ]
        self.backend.reply = "I can help with that."

        result = self._run("fix bug in the parser module")

        self.assertEqual(1, len(calls))
        self.assertIsNone(result.error)
        self.assertEqual(reply, result.text)
        self.assertEqual(0, self.health.entry(calls[0]).failures)

    def test_resume_token_from_concurrent_writer_is_kept(self) -> None:
        self._session()
        self.backend = ResumingBackend(
            "Hello from the model.",
            "ollama-thread-1",
            lambda: self.sessions.update("s1", _set_codex_token),
        )

        result = self._run("hello there")

        self.assertIsNone(result.error)
        self.assertEqual(
            {"ollama": "ollama-thread-1", "codex-cli": "codex-thread-9"},
            self.sessions.load("s1").resume_tokens,
        )

    def test_auto_memory_journals_chat_outcome(self) -> None:
        self.agents.save(AgentProfile(id="a1", provider="ollama", tools=["memory"]))
        self._session(tools=["memory"], agent_id="a1")
        self.backend.reply = "The deployment plan has three stages: build, verify and release to production."

        self._run("please write down our deployment plan")

        self.assertEqual(1, self.notes.count_for_session("s1"))
        self.assertEqual(NOW, self.sessions.load("s1").last_auto_memory_at)


class SyncFromAgentTests(unittest.TestCase):
    def test_copies_backend_settings_and_default_tools(self) -> None:
        session = Session(id="s1", provider="claude-cli")
        agent = AgentProfile(id="a1", provider="openai", model="gpt-4o", api_endpoint=" https://llm.local/v1/ ", tools=["files"])

        self.assertTrue(sync_from_agent(session, agent))
        self.assertEqual(("openai", "gpt-4o", "https://llm.local/v1"), (session.provider, session.model, session.api_endpoint))
        self.assertEqual(["files"], session.tools)
        self.assertFalse(sync_from_agent(session, AgentProfile(id="a1", provider="openai", model="gpt-4o", api_endpoint="https://llm.local/v1")))

    def test_padded_endpoint_is_only_written_once(self) -> None:
        session = Session(id="s1", provider="openai", tools=[])
        agent = AgentProfile(id="a1", provider="openai", api_endpoint=" https://x/ ")

        self.assertTrue(sync_from_agent(session, agent))
        self.assertFalse(sync_from_agent(session, agent))
        self.assertEqual("https://x", session.api_endpoint)

    def test_session_tools_are_kept(self) -> None:
        session = Session(id="s1", tools=["shell"])
        sync_from_agent(session, AgentProfile(id="a1", tools=["files"]))
        self.assertEqual(["shell"], session.tools)


if __name__ == "__main__":
    unittest.main()
