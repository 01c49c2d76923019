import asyncio
import json
from uuid import uuid4

from dotenv import load_dotenv
from loguru import logger

from agent_fleet_loop import tool_policy
from agent_fleet_loop.app_config import load_json_config, parse_app_config, resolve_runtime_env
from agent_fleet_loop.bootstrap import AppRuntime, bootstrap_runtime
from agent_fleet_loop.commands.router import CommandRouter
from agent_fleet_loop.models import TurnRequest, TurnResult
from agent_fleet_loop.stream_events import DELTA, ERR, TOOL_CALL, WARNING, StreamEvent

HEARTBEAT_PROMPT = (
    "Heartbeat check. Review the session goal and recent activity. "
    "If nothing needs attention, reply exactly HEARTBEAT_OK."
)

_HELP = """\
Commands:
  /help                 show this help
  /heartbeat [prompt]   run an internal heartbeat turn
  /health               delegate health snapshot
  /policy               resolved tool policy for this session
  /session              session summary and recent execution log
  exit | quit           leave"""


class FleetRepl:
    def __init__(self, runtime: AppRuntime):
        self._runtime = runtime
        self._streamed: list[str] = []
        self.router = CommandRouter(
            on_help=self._help,
            on_heartbeat=self._heartbeat,
            on_health=self._health,
            on_policy=self._policy,
            on_session=self._session,
            on_unknown=lambda command: print(f"Unknown command: {command}. Type /help for commands."),
        )

    def _on_event(self, event: StreamEvent) -> None:
        if event.t == DELTA:
            self._streamed.append(event.text)
            print(event.text, end="", flush=True)
        elif event.t == TOOL_CALL:
            print(f"\n[tool] {event.tool_name} {event.tool_input or ''}", flush=True)
        elif event.t == WARNING:
            print(f"\n[warning] {event.text}", flush=True)
        elif event.t == ERR:
            print(f"\n[error] {event.text}", flush=True)

    async def run_turn(self, message: str) -> TurnResult:
        self._streamed = []
        print("assistant> ", end="", flush=True)
        result = await self._runtime.orchestrator.execute_turn(
            TurnRequest(
                session_id=self._runtime.session_id,
                message=message,
                run_id=str(uuid4()),
                on_event=self._on_event,
            )
        )
        if result.text.strip() != "".join(self._streamed).strip():
            print(f"\n{result.text}")
        return result

    async def _help(self) -> None:
        print(_HELP)

    async def _heartbeat(self, prompt: str) -> None:
        self._streamed = []
        result = await self._runtime.orchestrator.execute_turn(
            TurnRequest(
                session_id=self._runtime.session_id,
                message=prompt or HEARTBEAT_PROMPT,
                internal=True,
                source="heartbeat",
                run_id=str(uuid4()),
                model_override=self._runtime.heartbeat_model,
                heartbeat=self._runtime.heartbeat,
            )
        )
        state = "persisted" if result.persisted else "suppressed"
        print(f"heartbeat ({state}): {result.text or result.error or '(empty)'}")

    async def _health(self) -> None:
        snapshot = self._runtime.health.snapshot()
        if not snapshot:
            print("No delegate health recorded yet.")
            return
        print(json.dumps(snapshot, indent=2, default=str))

    async def _policy(self) -> None:
        session = self._runtime.sessions.load(self._runtime.session_id)
        if session is None:
            print("Session not found.")
            return
        policy = tool_policy.resolve(session.tools, self._runtime.settings.load())
        print(f"Mode: {policy.mode}")
        print(f"Requested: {', '.join(policy.requested_tools) or '(none)'}")
        print(f"Enabled: {', '.join(policy.enabled_tools) or '(none)'}")
        if policy.blocked_tools:
            print(f"Blocked: {policy.summary()}")

    async def _session(self, _args: str) -> None:
        session = self._runtime.sessions.load(self._runtime.session_id)
        if session is None:
            print("Session not found.")
            return
        print(f"Session: {session.id} ({session.name or 'unnamed'})")
        print(f"Provider: {session.provider} {session.model}".rstrip())
        print(f"Messages: {len(session.messages)}")
        tokens = {k: v for k, v in session.resume_tokens.items() if v}
        if tokens:
            print(f"Resume tokens: {', '.join(f'{k}={v}' for k, v in tokens.items())}")
        for entry in self._runtime.execution_log.list_for_session(session.id, limit=5):
            print(f"  {entry['created_at']} {entry['type']}")


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = bootstrap_runtime(app, env)
    repl = FleetRepl(runtime)

    print("agent-fleet-loop (type 'exit' to quit, '/help' for commands)")
    print(f"Session: {runtime.session_id} ({app.provider_name})")
    if app.working_directory:
        print(f"Working directory: {app.working_directory}")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if await repl.router.try_handle(trimmed):
                    continue
                await repl.run_turn(trimmed)
                print("\n")
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        runtime.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
