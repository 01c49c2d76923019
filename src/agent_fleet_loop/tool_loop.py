from __future__ import annotations

import asyncio
import json

from loguru import logger

from agent_fleet_loop.backend import (
    BackendError,
    BackendRequest,
    EventCallback,
    ProviderFactory,
    UsageRecorder,
    build_messages,
    default_provider_factory,
    user_content,
)
from agent_fleet_loop.storage.usage import UsageRepository
from agent_fleet_loop.stream_events import DELTA, TOOL_CALL, TOOL_RESULT, StreamEvent

_CUT_OFF_NOTICE = (
    "Your response was cut off because it exceeded the token limit. "
    "Please continue, but be more concise. If you were writing a file, "
    "break it into smaller sections or shorten the content."
)


class ToolLoopBackend:
    """Tool-augmented chat: call the model, run the tools it asks for, feed results back."""

    def __init__(
        self,
        *,
        usage: UsageRepository | None = None,
        max_tokens: int = 8192,
        temperature: float = 1.0,
        max_tool_result_chars: int = 40_000,
        max_tool_iterations: int = 25,
        max_tokens_retries: int = 3,
        provider_factory: ProviderFactory = default_provider_factory,
    ):
        self._usage = UsageRecorder(usage)
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._max_tool_result_chars = max_tool_result_chars
        self._max_tool_iterations = max_tool_iterations
        self._max_tokens_retries = max_tokens_retries
        self._provider_factory = provider_factory

    async def invoke(self, request: BackendRequest, on_event: EventCallback) -> str:
        session = request.session
        provider = self._provider_factory(session.provider, request.api_key, session.api_endpoint)
        tool_set = request.tools
        tools = list(tool_set.tools) if tool_set is not None else []
        converted_tools = provider.convert_tools(tools)
        messages = build_messages(request.history, user_content(request.message, request.image_path, request.image_url))

        text_parts: list[str] = []
        max_tokens_attempts = 0
        iterations = 0

        while True:
            turn = await provider.stream_chat(
                request.model,
                self._max_tokens,
                self._temperature,
                request.system_prompt,
                messages,
                converted_tools,
                on_text=lambda text: on_event(StreamEvent(t=DELTA, text=text)),
            )
            self._usage.record(session, request.model, turn)
            messages.append(turn.message)
            if turn.text:
                text_parts.append(turn.text)

            if turn.stop_reason == "max_tokens" and not turn.tool_use_blocks:
                max_tokens_attempts += 1
                if max_tokens_attempts >= self._max_tokens_retries:
                    logger.warning(
                        f"Response exceeded max_tokens ({self._max_tokens}) "
                        f"{self._max_tokens_retries} times in a row; stopping"
                    )
                    break
                messages.append({"role": "user", "content": _CUT_OFF_NOTICE})
                continue

            max_tokens_attempts = 0

            if not turn.tool_use_blocks:
                break

            iterations += 1
            if iterations > self._max_tool_iterations:
                raise BackendError(f"Stopped after {self._max_tool_iterations} tool iterations")

            tool_results = await self.execute_tools(turn.tool_use_blocks, tool_set, on_event)
            messages.append({"role": "user", "content": tool_results})

        return "\n\n".join(part.strip() for part in text_parts if part.strip())

    async def execute_tools(self, tool_use_blocks: list[dict], tool_set, on_event: EventCallback) -> list[dict]:
        async def run_one(block: dict) -> dict:
            tool_name = block["name"]
            tool_use_id = block["id"]
            tool_input = block["input"]
            tool = tool_set.get(tool_name) if tool_set is not None else None

            on_event(StreamEvent(t=TOOL_CALL, tool_name=tool_name, tool_input=json.dumps(tool_input)))

            if tool is None:
                content = f'Error: unknown tool "{tool_name}"'
                is_error = True
            else:
                try:
                    content = self._truncate_tool_result(await tool.execute(tool_input), tool_name)
                    is_error = False
                except Exception as ex:
                    content = f'Error executing tool "{tool_name}": {ex}'
                    is_error = True

            on_event(StreamEvent(t=TOOL_RESULT, tool_name=tool_name, tool_output=content))
            result = {"type": "tool_result", "tool_use_id": tool_use_id, "content": content}
            if is_error:
                result["is_error"] = True
            return result

        return list(await asyncio.gather(*(run_one(b) for b in tool_use_blocks)))

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        if self._max_tool_result_chars <= 0 or len(result) <= self._max_tool_result_chars:
            return result

        original_length = len(result)
        truncated = result[: self._max_tool_result_chars]
        message = (
            f"\n\n[OUTPUT TRUNCATED: Showing {self._max_tool_result_chars:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
        logger.warning(
            f"{tool_name} output truncated from {original_length:,} "
            f"to {self._max_tool_result_chars:,} chars"
        )
        return truncated + message
