"""Execution backends a turn can be dispatched to.

Every backend reports progress through ``on_event`` with StreamEvents and
returns the final assistant text. Hosted APIs go through an LLMProvider;
CLI-class providers run as subprocesses.
"""

from __future__ import annotations

import base64
import mimetypes
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from loguru import logger

from agent_fleet_loop import cli_runner
from agent_fleet_loop.models import Session
from agent_fleet_loop.provider import ChatTurn, LLMProvider, create_provider
from agent_fleet_loop.spend_guard import estimate_cost
from agent_fleet_loop.storage.usage import UsageRepository
from agent_fleet_loop.stream_events import DELTA, StreamEvent

if TYPE_CHECKING:
    from agent_fleet_loop.tool_registry import ToolSet

EventCallback = Callable[[StreamEvent], None]
ProviderFactory = Callable[..., LLMProvider]

CLI_PROVIDERS = ("claude-cli", "codex-cli", "opencode-cli")


class BackendError(Exception):
    """A backend failed for a reason other than a retryable API error."""


@dataclass
class BackendRequest:
    session: Session
    message: str
    system_prompt: str = ""
    api_key: str | None = None
    model: str = ""
    history: list[dict] = field(default_factory=list)
    tools: ToolSet | None = None
    image_path: str | None = None
    image_url: str | None = None


@runtime_checkable
class ChatBackend(Protocol):
    async def invoke(self, request: BackendRequest, on_event: EventCallback) -> str: ...


def default_provider_factory(provider_id: str, api_key: str | None, base_url: str | None) -> LLMProvider:
    return create_provider(provider_id, api_key, base_url=base_url)


def user_content(message: str, image_path: str | None = None, image_url: str | None = None) -> str | list[dict]:
    if not image_path and not image_url:
        return message
    blocks: list[dict] = []
    if image_url:
        blocks.append({"type": "image", "source": {"type": "url", "url": image_url}})
    elif image_path:
        path = Path(image_path)
        if path.is_file():
            media_type = mimetypes.guess_type(path.name)[0] or "image/png"
            data = base64.b64encode(path.read_bytes()).decode("ascii")
            blocks.append({"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}})
        else:
            logger.warning(f"Image attachment not found: {image_path}")
    blocks.append({"type": "text", "text": message})
    return blocks


def build_messages(history: list[dict], content: str | list[dict]) -> list[dict]:
    """History plus the new user turn, with consecutive same-role text entries joined."""
    messages: list[dict] = []
    for entry in history:
        role = entry.get("role")
        text = entry.get("content")
        if role not in ("user", "assistant") or not isinstance(text, str) or not text:
            continue
        if messages and messages[-1]["role"] == role and isinstance(messages[-1]["content"], str):
            messages[-1]["content"] += "\n\n" + text
        else:
            messages.append({"role": role, "content": text})
    while messages and messages[0]["role"] != "user":
        messages.pop(0)
    if messages and messages[-1]["role"] == "user" and isinstance(content, str) and isinstance(messages[-1]["content"], str):
        messages[-1]["content"] += "\n\n" + content
    else:
        messages.append({"role": "user", "content": content})
    return messages


class UsageRecorder:
    def __init__(self, usage: UsageRepository | None):
        self._usage = usage

    def record(self, session: Session, model: str, turn: ChatTurn) -> None:
        if self._usage is None or (turn.input_tokens == 0 and turn.output_tokens == 0):
            return
        self._usage.record(
            session_id=session.id,
            provider=session.provider,
            model=model,
            input_tokens=turn.input_tokens,
            output_tokens=turn.output_tokens,
            estimated_cost=estimate_cost(model, turn.input_tokens, turn.output_tokens),
        )


class ProviderChatBackend:
    """Raw chat over a hosted API: one streamed completion, no tools."""

    def __init__(
        self,
        *,
        usage: UsageRepository | None = None,
        max_tokens: int = 8192,
        temperature: float = 1.0,
        provider_factory: ProviderFactory = default_provider_factory,
    ):
        self._usage = UsageRecorder(usage)
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._provider_factory = provider_factory

    async def invoke(self, request: BackendRequest, on_event: EventCallback) -> str:
        session = request.session
        provider = self._provider_factory(session.provider, request.api_key, session.api_endpoint)
        messages = build_messages(request.history, user_content(request.message, request.image_path, request.image_url))
        turn = await provider.stream_chat(
            request.model,
            self._max_tokens,
            self._temperature,
            request.system_prompt,
            messages,
            [],
            on_text=lambda text: on_event(StreamEvent(t=DELTA, text=text)),
        )
        self._usage.record(session, request.model, turn)
        return turn.text


class CliBackend:
    """Runs claude/codex/opencode non-interactively and keeps their resume id on the session copy."""

    def __init__(self, *, timeout_seconds: float = 900):
        self._timeout = timeout_seconds

    async def invoke(self, request: BackendRequest, on_event: EventCallback) -> str:
        session = request.session
        provider_id = session.provider
        resume_token = session.resume_tokens.get(provider_id)

        prompt = request.message
        if request.system_prompt and not resume_token:
            prompt = f"{request.system_prompt}\n\n{prompt}"
        if request.image_path:
            prompt += f"\n\n[Attached image: {request.image_path}]"
        elif request.image_url:
            prompt += f"\n\n[Attached image: {request.image_url}]"

        argv, stdin_text = cli_runner.build_command(
            provider_id, prompt, resume_token=resume_token, model=request.model or None
        )
        try:
            result = await cli_runner.run_cli(argv, cwd=session.cwd, stdin_text=stdin_text, timeout=self._timeout)
        except FileNotFoundError as ex:
            raise BackendError(f"{argv[0]} CLI not found on PATH") from ex

        if result.timed_out:
            raise BackendError(f"{provider_id} timed out after {self._timeout:.0f}s")
        if result.returncode != 0:
            detail = cli_runner.tail(result.stderr.strip() or result.stdout.strip(), 500)
            raise BackendError(f"{provider_id} exited with code {result.returncode}: {detail}")

        reply = cli_runner.parse_output(result.stdout)
        if reply.resume_token:
            session.resume_tokens[provider_id] = reply.resume_token
        if reply.text:
            on_event(StreamEvent(t=DELTA, text=reply.text))
        return reply.text


class BackendResolver:
    def __init__(self, *, chat: ChatBackend, tool_loop: ChatBackend, cli: ChatBackend):
        self._chat = chat
        self._tool_loop = tool_loop
        self._cli = cli

    def resolve(self, provider_id: str, with_tools: bool) -> ChatBackend:
        if provider_id in CLI_PROVIDERS:
            return self._cli
        return self._tool_loop if with_tools else self._chat
