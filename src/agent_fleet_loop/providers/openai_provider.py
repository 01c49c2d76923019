import json

import openai
from loguru import logger
from tenacity import retry

from agent_fleet_loop.provider import ChatTurn, TextCallback
from agent_fleet_loop.providers.common import default_retry_kwargs, tool_definitions
from agent_fleet_loop.tool import Tool

# Map OpenAI finish reasons to Anthropic-style stop reasons.
_STOP_REASON_MAP = {
    "stop": "end_turn",
    "tool_calls": "tool_use",
    "length": "max_tokens",
}

_RETRYABLE = (
    openai.RateLimitError,
    openai.APIConnectionError,
    openai.APITimeoutError,
)


def _flatten_tool_result(content) -> str:
    if isinstance(content, list):
        return "\n".join(
            sub.get("text", "") for sub in content if isinstance(sub, dict) and sub.get("type") == "text"
        )
    return str(content)


def _to_openai_messages(system_prompt: str, messages: list[dict]) -> list[dict]:
    """Convert internal (Anthropic-style) messages to OpenAI chat format."""
    out: list[dict] = []
    if system_prompt:
        out.append({"role": "system", "content": system_prompt})

    for msg in messages:
        role = msg["role"]
        content = msg.get("content", "")
        if isinstance(content, str):
            out.append({"role": role, "content": content})
            continue

        if role == "assistant":
            text_parts: list[str] = []
            tool_calls: list[dict] = []
            for block in content:
                if block.get("type") == "text":
                    text_parts.append(block["text"])
                elif block.get("type") == "tool_use":
                    tool_calls.append({
                        "id": block["id"],
                        "type": "function",
                        "function": {"name": block["name"], "arguments": json.dumps(block["input"])},
                    })
            oai_msg: dict = {"role": "assistant", "content": "\n".join(text_parts) if text_parts else None}
            if tool_calls:
                oai_msg["tool_calls"] = tool_calls
            out.append(oai_msg)
            continue

        # User content may mix text, images and tool results.
        parts: list[dict] = []
        for block in content:
            kind = block.get("type")
            if kind == "tool_result":
                out.append({
                    "role": "tool",
                    "tool_call_id": block["tool_use_id"],
                    "content": _flatten_tool_result(block.get("content", "")),
                })
            elif kind == "text":
                parts.append({"type": "text", "text": block["text"]})
            elif kind == "image":
                source = block.get("source", {})
                if source.get("type") == "url":
                    url = source["url"]
                else:
                    url = f"data:{source.get('media_type', 'image/png')};base64,{source.get('data', '')}"
                parts.append({"type": "image_url", "image_url": {"url": url}})
        if parts:
            if all(p["type"] == "text" for p in parts):
                out.append({"role": "user", "content": "\n".join(p["text"] for p in parts)})
            else:
                out.append({"role": "user", "content": parts})

    return out


def _to_openai_tools(tools: list[dict]) -> list[dict]:
    return [
        {
            "type": "function",
            "function": {
                "name": t["name"],
                "description": t.get("description", ""),
                "parameters": t.get("input_schema", {}),
            },
        }
        for t in tools
    ]


class OpenAIProvider:
    def __init__(self, api_key: str | None, *, base_url: str | None = None):
        # Local OpenAI-compatible servers accept any key.
        self._client = openai.AsyncOpenAI(api_key=api_key or "not-needed", base_url=base_url)

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return tool_definitions(tools)

    @retry(**default_retry_kwargs(_RETRYABLE))
    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
        *,
        on_text: TextCallback | None = None,
    ) -> ChatTurn:
        oai_messages = _to_openai_messages(system_prompt, messages)
        oai_tools = _to_openai_tools(tools)

        text_content = ""
        # index -> {"id", "name", "arguments_parts"}
        tool_calls_acc: dict[int, dict] = {}
        finish_reason: str | None = None
        input_tokens = 0
        output_tokens = 0

        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(oai_messages)}, tools={len(oai_tools)}"
        )
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            messages=oai_messages,
            stream=True,
            stream_options={"include_usage": True},
        )
        if oai_tools:
            kwargs["tools"] = oai_tools

        stream = await self._client.chat.completions.create(**kwargs)
        async for chunk in stream:
            if getattr(chunk, "usage", None):
                input_tokens = chunk.usage.prompt_tokens or 0
                output_tokens = chunk.usage.completion_tokens or 0
            choice = chunk.choices[0] if chunk.choices else None
            if choice is None:
                continue
            if choice.finish_reason:
                finish_reason = choice.finish_reason
            delta = choice.delta
            if delta is None:
                continue

            if delta.content:
                text_content += delta.content
                if on_text is not None:
                    on_text(delta.content)

            for tc_delta in delta.tool_calls or []:
                acc = tool_calls_acc.setdefault(tc_delta.index, {"id": "", "name": "", "arguments_parts": []})
                if tc_delta.id:
                    acc["id"] = tc_delta.id
                if tc_delta.function:
                    if tc_delta.function.name:
                        acc["name"] = tc_delta.function.name
                    if tc_delta.function.arguments:
                        acc["arguments_parts"].append(tc_delta.function.arguments)

        stop_reason = _STOP_REASON_MAP.get(finish_reason or "stop", "end_turn")

        content: list[dict] = []
        tool_use_blocks: list[dict] = []
        if text_content:
            content.append({"type": "text", "text": text_content})

        for idx in sorted(tool_calls_acc):
            acc = tool_calls_acc[idx]
            raw_args = "".join(acc["arguments_parts"])
            try:
                parsed_input = json.loads(raw_args) if raw_args else {}
            except json.JSONDecodeError:
                logger.warning(f"Failed to parse tool call arguments: {raw_args[:200]}")
                parsed_input = {}
            tool_block = {"type": "tool_use", "id": acc["id"], "name": acc["name"], "input": parsed_input}
            content.append(tool_block)
            tool_use_blocks.append(tool_block)

        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"text_len={len(text_content)}, tool_calls={len(tool_use_blocks)}"
        )
        return ChatTurn(
            message={"role": "assistant", "content": content},
            tool_use_blocks=tool_use_blocks,
            stop_reason=stop_reason,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )
