"""One turn of a session, from inbound message to persisted result.

Init -> spend guard -> policy -> backend invocation -> forced/auto tool
routing -> compare-and-merge persistence. Expected failures never escape
``execute_turn``: they come back on ``TurnResult.error`` and as StreamEvents
on ``TurnRequest.on_event``.
"""

from __future__ import annotations

import asyncio
import json
import os
import time
from collections import deque
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from agent_fleet_loop import capability_router, heartbeat, tool_policy, tool_requests
from agent_fleet_loop.auto_memory import AutoMemoryGate
from agent_fleet_loop.backend import BackendError, BackendRequest, BackendResolver
from agent_fleet_loop.capability_router import DELEGATE_TOOLS, RoutingDecision
from agent_fleet_loop.connectors import (
    ConnectorSender,
    NullConnectorSender,
    resolve_heartbeat_target,
    send_best_effort,
)
from agent_fleet_loop.credentials import Decrypt, get_provider, plaintext, resolve_api_key
from agent_fleet_loop.delegate_health import DelegateHealthTable
from agent_fleet_loop.models import AgentProfile, Message, Session, TurnRequest, TurnResult
from agent_fleet_loop.run_registry import RunHandle, RunRegistry
from agent_fleet_loop.session_merge import SessionPatch, merge_session_patch, resume_token_changes
from agent_fleet_loop.settings import FleetSettings
from agent_fleet_loop.spend_guard import SpendGuard
from agent_fleet_loop.storage import (
    AgentRepository,
    CredentialRepository,
    ExecutionLog,
    SessionRepository,
    SettingsRepository,
)
from agent_fleet_loop.stream_events import (
    BACKEND_FAILURE,
    BUDGET_EXCEEDED,
    CANCELLED,
    DONE,
    ERR,
    POLICY_BLOCKED,
    PROMISED_TOOL_NOT_INVOKED,
    TOOL_CALL,
    TOOL_FAILURE,
    TOOL_RESULT,
    WARNING,
    StreamEvent,
    ToolEventCollector,
    looks_like_failed_output,
)
from agent_fleet_loop.system_prompt import build_system_prompt
from agent_fleet_loop.tool_policy import CONCRETE_TO_FAMILIES, TOOL_DESCRIPTORS, ToolPolicy
from agent_fleet_loop.tool_registry import ToolSet, ToolSetBuilder

RUN_CANCELLED = "Run cancelled"
TOOL_NOTICE_PREFIX = "Tool execution notice:"

_STREAM_ERRORS_KEPT = 8
_DELEGATE_META_MARKER = "[delegate_meta]"
_NO_LAST_ACTIVE_SOURCES = ("heartbeat", "main-loop-followup")
_STATUS_ONLY_STATES = ("ok", "idle")


def sync_from_agent(session: Session, agent: AgentProfile) -> bool:
    """Copy the owning agent's backend settings onto ``session``. Returns True if anything changed."""
    changed = False
    if agent.provider and agent.provider != session.provider:
        session.provider = agent.provider
        changed = True
    if agent.model is not None and agent.model != session.model:
        session.model = agent.model
        changed = True
    if agent.credential_id is not None and agent.credential_id != session.credential_id:
        session.credential_id = agent.credential_id
        changed = True
    if agent.api_endpoint is not None:
        endpoint = agent.api_endpoint.strip().rstrip("/") or None
        if endpoint != session.api_endpoint:
            session.api_endpoint = endpoint
            changed = True
    if session.tools is None:
        session.tools = list(agent.tools)
        changed = True
    return changed


def _strip_delegate_meta(output: str) -> str:
    return output.split(_DELEGATE_META_MARKER, 1)[0].strip() or output.strip()


@dataclass
class _Turn:
    """Mutable state of one turn. Never shared between turns."""

    request: TurnRequest
    session: Session
    agent: AgentProfile | None
    settings: FleetSettings
    policy: ToolPolicy
    tools_for_run: list[str]
    handle: RunHandle | None = None
    collector: ToolEventCollector = field(default_factory=ToolEventCollector)
    stream_errors: deque[str] = field(default_factory=lambda: deque(maxlen=_STREAM_ERRORS_KEPT))
    reported_blocks: set[str] = field(default_factory=set)
    invoked: set[str] = field(default_factory=set)
    attempted: list[str] = field(default_factory=list)
    response: str = ""
    error: str | None = None
    cancelled: bool = False

    def emit(self, event: StreamEvent) -> None:
        self.collector.add(event)
        if event.t == ERR and event.text:
            self.stream_errors.append(event.text)
        if self.request.on_event is not None:
            self.request.on_event(event)

    @property
    def abort_requested(self) -> bool:
        if self.cancelled or (self.handle is not None and self.handle.scope.cancelled):
            return True
        return self.request.cancel_event is not None and self.request.cancel_event.is_set()


class TurnOrchestrator:
    """Runs turns against injected storage, backends, tools and shared health/run state."""

    def __init__(
        self,
        *,
        sessions: SessionRepository,
        agents: AgentRepository,
        credentials: CredentialRepository,
        settings: SettingsRepository,
        backends: BackendResolver,
        tool_builder: ToolSetBuilder,
        health: DelegateHealthTable,
        runs: RunRegistry,
        spend_guard: SpendGuard,
        memory_gate: AutoMemoryGate | None = None,
        connector_sender: ConnectorSender | None = None,
        execution_log: ExecutionLog | None = None,
        decrypt: Decrypt = plaintext,
        env_keys: Mapping[str, str | None] | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._sessions = sessions
        self._agents = agents
        self._credentials = credentials
        self._settings = settings
        self._backends = backends
        self._tool_builder = tool_builder
        self._health = health
        self._runs = runs
        self._spend_guard = spend_guard
        self._memory_gate = memory_gate
        self._connector_sender = connector_sender or NullConnectorSender()
        self._execution_log = execution_log
        self._decrypt = decrypt
        self._env_keys = env_keys
        self._clock = clock

    async def execute_turn(self, request: TurnRequest) -> TurnResult:
        session, agent = self._load_session(request.session_id)
        settings = self._settings.load()

        budget_error = self._spend_guard.check(settings)
        if budget_error:
            return self._budget_exceeded(request, budget_error)

        policy = tool_policy.resolve(session.tools, settings)
        status_only = (
            request.is_heartbeat
            and session.is_main
            and session.main_loop_state is not None
            and session.main_loop_state.status in _STATUS_ONLY_STATES
        )
        tools_for_run = [] if status_only else list(policy.enabled_tools)

        working = session.copy()
        working.tools = tools_for_run
        if request.is_heartbeat and request.model_override:
            working.model = request.model_override

        turn = _Turn(
            request=request,
            session=working,
            agent=agent,
            settings=settings,
            policy=policy,
            tools_for_run=tools_for_run,
        )

        if not status_only and policy.blocked_tools:
            self._report_policy_blocks(turn)

        logger.debug(
            f"Turn trigger: session={request.session_id} run={request.run_id} source={request.source} "
            f"internal={request.internal} provider={working.provider} tools={tools_for_run}"
        )
        self._log_event(
            request.session_id,
            "trigger",
            {
                "runId": request.run_id,
                "source": request.source,
                "internal": request.internal,
                "provider": working.provider,
                "model": working.model,
                "tools": tools_for_run,
                "statusOnly": status_only,
            },
        )

        history = self._sessions.history(request.session_id)
        if not request.internal:
            self._append_user_message(request)

        async with self._tool_builder.build(
            working.cwd,
            tools_for_run,
            session_id=working.id,
            agent_id=working.agent_id,
        ) as tool_set:
            link_task = self._open_run(turn)
            try:
                await self._invoke(turn, tool_set, history)
                if not turn.cancelled and request.is_user_chat:
                    await self._post_route(turn, tool_set)
                    if turn.abort_requested and not turn.cancelled:
                        self._mark_cancelled(turn)
            finally:
                self._close_run(turn, link_task)

        if not turn.error and not turn.cancelled and turn.stream_errors and not turn.response.strip():
            turn.error = turn.stream_errors[-1]

        return await self._persist(turn, session)

    def _load_session(self, session_id: str) -> tuple[Session, AgentProfile | None]:
        session = self._sessions.load(session_id)
        if session is None:
            raise ValueError(f"Session not found: {session_id}")
        if not session.agent_id:
            return session, None
        agent = self._agents.get(session.agent_id)
        if agent is None:
            return session, None
        synced = self._sessions.update(session_id, lambda current: sync_from_agent(current, agent))
        return synced or session, agent

    def _budget_exceeded(self, request: TurnRequest, message: str) -> TurnResult:
        logger.warning(f"Spend breaker tripped for session {request.session_id}: {message}")
        if request.on_event is not None:
            request.on_event(StreamEvent(t=ERR, text=message, kind=BUDGET_EXCEEDED))
        self._log_event(request.session_id, "budget", {"runId": request.run_id, "message": message})

        persisted = False
        if not request.internal:
            now = self._clock()
            patch = SessionPatch(
                message=Message(role="assistant", text=message, time=now, kind="chat"),
                last_active_at=now,
            )
            persisted = self._sessions.update(request.session_id, lambda current: merge_session_patch(current, patch)) is not None
        return TurnResult(
            session_id=request.session_id,
            text=message,
            persisted=persisted,
            error=message,
            run_id=request.run_id,
        )

    def _report_policy_blocks(self, turn: _Turn) -> None:
        summary = turn.policy.summary()
        logger.warning(f"Capability policy blocked tools for session {turn.session.id}: {summary}")
        for entry in turn.policy.blocked_tools:
            turn.reported_blocks.add(entry.tool)
            descriptor = TOOL_DESCRIPTORS.get(entry.tool)
            if descriptor is not None:
                turn.reported_blocks.update(descriptor.concrete_tools)
        turn.emit(
            StreamEvent(
                t=WARNING,
                text=f"Capability policy blocked tools for this run: {summary}",
                kind=POLICY_BLOCKED,
            )
        )

    def _append_user_message(self, request: TurnRequest) -> None:
        now = self._clock()
        message = Message(
            role="user",
            text=request.message,
            time=now,
            image_path=request.image_path,
            image_url=request.image_url,
        )
        patch = SessionPatch(message=message, last_active_at=now)
        self._sessions.update(request.session_id, lambda current: merge_session_patch(current, patch))

    # -- Invoking --------------------------------------------------------

    def _open_run(self, turn: _Turn) -> asyncio.Task | None:
        """Register the turn for cancel-by-session-id. Stays registered until post-routing ends."""
        request = turn.request
        handle = RunHandle(session_id=request.session_id, run_id=request.run_id, source=request.source)
        turn.handle = handle
        self._runs.register(handle)

        if request.cancel_event is None:
            return None
        if request.cancel_event.is_set():
            handle.scope.abort()
            return None
        return asyncio.create_task(handle.scope.link(request.cancel_event))

    def _close_run(self, turn: _Turn, link_task: asyncio.Task | None) -> None:
        if link_task is not None:
            link_task.cancel()
        if turn.handle is not None:
            turn.handle.scope.unbind()
            self._runs.deregister(turn.handle)

    def _mark_cancelled(self, turn: _Turn) -> None:
        request = turn.request
        turn.cancelled = True
        turn.error = RUN_CANCELLED
        turn.response = ""
        turn.emit(StreamEvent(t=ERR, text=RUN_CANCELLED, kind=CANCELLED))
        logger.info(f"Run cancelled: session={request.session_id} run={request.run_id}")
        self._log_event(request.session_id, "cancelled", {"runId": request.run_id})

    async def _invoke(self, turn: _Turn, tool_set: ToolSet, history: list[dict]) -> None:
        request = turn.request
        handle = turn.handle
        provider_id = turn.session.provider
        backend_task = asyncio.create_task(self._call_backend(turn, tool_set, history))
        handle.scope.bind(backend_task)
        if handle.scope.cancelled:
            backend_task.cancel()

        try:
            turn.response = await backend_task or ""
            self._health.mark_success(provider_id)
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not handle.scope.cancelled or (current is not None and current.cancelling()):
                raise
            self._mark_cancelled(turn)
        except Exception as ex:
            turn.error = str(ex) or "Run failed."
            self._health.mark_failure(provider_id, turn.error)
            turn.emit(StreamEvent(t=ERR, text=turn.error, kind=BACKEND_FAILURE))
            logger.error(
                f"Backend failure: session={request.session_id} run={request.run_id} "
                f"source={request.source} internal={request.internal} provider={provider_id}: {turn.error}"
            )
            self._log_event(request.session_id, "error", {"runId": request.run_id, "error": turn.error})
        finally:
            handle.scope.unbind()

    async def _call_backend(self, turn: _Turn, tool_set: ToolSet, history: list[dict]) -> str:
        session = turn.session
        provider = get_provider(session.provider)
        if provider.cli and session.cwd and not os.path.isdir(session.cwd):
            raise BackendError(f"Directory not found: {session.cwd}")
        api_key = resolve_api_key(session, provider, self._credentials, self._decrypt, self._env_keys)
        system_prompt = build_system_prompt(
            turn.agent,
            turn.settings,
            working_directory=session.cwd,
            tool_names=tool_set.names,
        )
        with_tools = bool(turn.tools_for_run)
        backend = self._backends.resolve(session.provider, with_tools)
        backend_request = BackendRequest(
            session=session,
            message=turn.request.message,
            system_prompt=system_prompt,
            api_key=api_key,
            model=session.model,
            history=history,
            tools=tool_set if with_tools else None,
            image_path=turn.request.image_path,
            image_url=turn.request.image_url,
        )
        text = await backend.invoke(backend_request, turn.emit)
        turn.emit(StreamEvent(t=DONE))
        return text

    # -- PostRouting -----------------------------------------------------

    async def _post_route(self, turn: _Turn, tool_set: ToolSet) -> None:
        message = turn.request.message
        turn.invoked.update(turn.collector.called_names)
        scan = tool_requests.scan(message, turn.response)
        decision = capability_router.classify(message, turn.tools_for_run, turn.settings)

        for call in scan.calls:
            if turn.abort_requested:
                return
            if call.name in turn.invoked:
                continue
            logger.info(f"Forcing {call.name} ({call.origin}) for session {turn.session.id}")
            if call.name in DELEGATE_TOOLS:
                await self._run_delegate(turn, tool_set, call.name, str(call.args.get("task", "")), "Forced delegation failed")
            else:
                output = await self._run_tool(turn, tool_set, call.name, call.args, f"Forced {call.name} invocation failed")
                self._adopt(turn, output)

        enabled_delegates = [name for name in DELEGATE_TOOLS if name in tool_set]
        backend_failed = bool(turn.error) and not turn.response.strip()

        if enabled_delegates and decision.intent == "coding" and not self._delegation_called(turn):
            for name in self._delegate_order(decision, enabled_delegates):
                if turn.abort_requested:
                    return
                if await self._run_delegate(turn, tool_set, name, message, "Auto-delegation failed"):
                    if backend_failed:
                        logger.info(f"Recovered failed backend via auto-delegation to {name}")
                        turn.error = None
                    break

        if (
            turn.error
            and not turn.response.strip()
            and enabled_delegates
            and not self._delegation_called(turn)
            and decision.intent in ("coding", "general")
        ):
            for name in self._delegate_order(decision, enabled_delegates):
                if turn.abort_requested:
                    return
                if name in turn.attempted:
                    continue
                if await self._run_delegate(turn, tool_set, name, message, "Failover delegation failed"):
                    logger.info(f"Failover to {name} succeeded for session {turn.session.id}")
                    turn.error = None
                    break
            else:
                logger.info(f"Failover exhausted for session {turn.session.id}")

        if not turn.invoked and not scan.requested and not turn.abort_requested:
            await self._auto_route(turn, tool_set, decision)

        missed = [name for name in scan.requested if name not in turn.invoked]
        if missed:
            notice = f"{TOOL_NOTICE_PREFIX} requested tool(s) {', '.join(missed)} were not actually invoked in this run."
            if TOOL_NOTICE_PREFIX not in turn.response:
                turn.response = f"{turn.response.strip()}\n\n{notice}".strip()
            turn.emit(StreamEvent(t=WARNING, text=notice, kind=PROMISED_TOOL_NOT_INVOKED))

    async def _auto_route(self, turn: _Turn, tool_set: ToolSet, decision: RoutingDecision) -> None:
        url = decision.primary_url
        if decision.intent == "browsing" and url and "browser" in tool_set:
            output = await self._run_tool(turn, tool_set, "browser", {"action": "navigate", "url": url}, "Auto browser routing failed")
            self._adopt(turn, output)
        elif decision.intent == "research":
            if url and "web_fetch" in tool_set:
                output = await self._run_tool(turn, tool_set, "web_fetch", {"url": url}, "Auto web_fetch routing failed")
            elif "web_search" in tool_set:
                args = {"query": turn.request.message.strip(), "count": 5}
                output = await self._run_tool(turn, tool_set, "web_search", args, "Auto web_search routing failed")
            else:
                return
            self._adopt(turn, output)

    def _delegate_order(self, decision: RoutingDecision, enabled: list[str]) -> list[str]:
        candidates = [name for name in decision.preferred_delegates if name in enabled]
        candidates += [name for name in enabled if name not in candidates]
        return self._health.rank(candidates)

    @staticmethod
    def _delegation_called(turn: _Turn) -> bool:
        return any(name in turn.invoked for name in DELEGATE_TOOLS)

    @staticmethod
    def _adopt(turn: _Turn, output: str | None) -> None:
        if output and output.strip():
            turn.response = output.strip()

    async def _run_delegate(self, turn: _Turn, tool_set: ToolSet, name: str, task: str, failure_prefix: str) -> bool:
        attempts_before = len(turn.attempted)
        output = await self._run_tool(turn, tool_set, name, {"task": task}, failure_prefix)
        if len(turn.attempted) == attempts_before:
            return False
        if output is None and turn.abort_requested:
            return False
        if output is None or not output.strip() or looks_like_failed_output(output):
            self._health.mark_failure(name, (output or "no output").strip())
            return False
        self._health.mark_success(name)
        turn.response = _strip_delegate_meta(output)
        return True

    async def _run_tool(
        self,
        turn: _Turn,
        tool_set: ToolSet,
        name: str,
        args: dict[str, Any],
        failure_prefix: str,
    ) -> str | None:
        """Invoke one tool outside the backend loop. Returns its output, or None if it did not run."""
        if turn.abort_requested:
            return None
        reason = tool_policy.block_concrete_invocation(name, turn.policy, turn.settings)
        if reason:
            self._warn_blocked(turn, name, reason)
            return None
        tool = tool_set.get(name)
        if tool is None:
            logger.debug(f"Tool {name} is not available for session {turn.session.id}")
            return None

        turn.attempted.append(name)
        turn.emit(StreamEvent(t=TOOL_CALL, tool_name=name, tool_input=json.dumps(args, ensure_ascii=False)))
        tool_task = asyncio.create_task(tool.execute(args))
        scope = turn.handle.scope if turn.handle is not None else None
        if scope is not None:
            scope.bind(tool_task)
        try:
            output = await tool_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if not turn.abort_requested or (current is not None and current.cancelling()):
                raise
            logger.info(f"{name} stopped by cancellation (session={turn.session.id})")
            return None
        except Exception as ex:
            text = f"{failure_prefix}: {ex}"
            logger.warning(f"{text} (session={turn.session.id})")
            turn.emit(StreamEvent(t=ERR, text=text, tool_name=name, kind=TOOL_FAILURE))
            return None
        finally:
            if scope is not None:
                scope.unbind()
        turn.emit(StreamEvent(t=TOOL_RESULT, tool_name=name, tool_output=output))
        turn.invoked.add(name)
        return output

    @staticmethod
    def _warn_blocked(turn: _Turn, name: str, reason: str) -> None:
        keys = {name, *CONCRETE_TO_FAMILIES.get(name, [])}
        logger.warning(f"Capability policy blocked {name} for session {turn.session.id}: {reason}")
        if keys & turn.reported_blocks:
            return
        turn.reported_blocks.update(keys)
        turn.emit(
            StreamEvent(
                t=WARNING,
                text=f"Capability policy blocked tool invocation: {name} ({reason})",
                tool_name=name,
                kind=POLICY_BLOCKED,
            )
        )

    # -- Persisting ------------------------------------------------------

    async def _persist(self, turn: _Turn, stored: Session) -> TurnResult:
        request = turn.request
        now = self._clock()

        final_text = turn.response.strip()
        if not final_text and turn.error and not request.internal and not turn.cancelled:
            final_text = f"Error: {turn.error}"
        text_for_persistence = heartbeat.strip_main_loop_meta(final_text, request.internal)

        classification = heartbeat.KEEP
        if request.is_heartbeat and text_for_persistence:
            ack_max_chars = request.heartbeat.ack_max_chars if request.heartbeat else 300
            classification = heartbeat.classify(text_for_persistence, ack_max_chars)

        should_persist = bool(text_for_persistence) and classification != heartbeat.SUPPRESS and not turn.cancelled
        persisted_text = (
            heartbeat.strip_sentinel(text_for_persistence) if classification == heartbeat.STRIP else text_for_persistence
        )

        patch = SessionPatch(resume_tokens=resume_token_changes(stored.resume_tokens, turn.session.resume_tokens))
        if should_persist:
            kind = "heartbeat" if request.internal and request.source != "session-awakening" else "chat"
            patch.message = Message(
                role="assistant",
                text=persisted_text,
                time=now,
                tool_events=list(turn.collector.events),
                kind=kind,
            )

        if not turn.cancelled and self._memory_gate is not None:
            journal_session = self._sessions.load(request.session_id) or turn.session
            if self._memory_gate.should_journal(
                journal_session, request.source, request.internal, request.message, text_for_persistence, now
            ):
                note_id = self._memory_gate.journal(
                    journal_session, request.message, text_for_persistence, request.source, now
                )
                if note_id:
                    patch.auto_memory_at = now
            else:
                logger.debug(f"Auto-memory skipped for session {request.session_id}")

        if request.source not in _NO_LAST_ACTIVE_SOURCES:
            patch.last_active_at = now

        merged = self._sessions.update(request.session_id, lambda current: merge_session_patch(current, patch))
        persisted = merged is not None and patch.message is not None
        logger.debug(
            f"Turn merged: session={request.session_id} persisted={persisted} "
            f"resume_tokens={sorted(patch.resume_tokens)} heartbeat={classification}"
        )
        self._log_event(
            request.session_id,
            "persisted",
            {
                "runId": request.run_id,
                "persisted": persisted,
                "classification": classification,
                "error": turn.error,
                "toolEvents": len(turn.collector.events),
            },
        )

        if persisted and request.is_heartbeat:
            await self._route_heartbeat_alert(request, persisted_text)

        return TurnResult(
            session_id=request.session_id,
            text=final_text,
            persisted=persisted,
            tool_events=list(turn.collector.events),
            error=turn.error,
            run_id=request.run_id,
        )

    async def _route_heartbeat_alert(self, request: TurnRequest, text: str) -> None:
        config = request.heartbeat
        if config is None or not config.show_alerts:
            return
        target = resolve_heartbeat_target(self._connector_sender, config.target)
        if target is None:
            return
        connector_id, channel_id = target
        await send_best_effort(self._connector_sender, connector_id=connector_id, channel_id=channel_id, text=text)

    def _log_event(self, session_id: str, event_type: str, payload: dict) -> None:
        if self._execution_log is not None:
            self._execution_log.record(session_id, event_type, payload)
