import anthropic
from loguru import logger
from tenacity import retry

from agent_fleet_loop.provider import ChatTurn, TextCallback
from agent_fleet_loop.providers.common import default_retry_kwargs, tool_definitions
from agent_fleet_loop.tool import Tool

_RETRYABLE = (
    anthropic.RateLimitError,
    anthropic.APIConnectionError,
    anthropic.APITimeoutError,
)


class AnthropicProvider:
    def __init__(self, api_key: str | None, *, base_url: str | None = None):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url)

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
        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(messages)}, tools={len(tools)}"
        )
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=messages,
        )
        if tools:
            kwargs["tools"] = tools

        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    if on_text is not None:
                        on_text(event.delta.text)
            response = await stream.get_final_message()

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )

        content: list[dict] = []
        tool_use_blocks: list[dict] = []
        for block in response.content:
            if block.type == "text":
                content.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                tool_block = {
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input,
                }
                content.append(tool_block)
                tool_use_blocks.append(tool_block)

        return ChatTurn(
            message={"role": "assistant", "content": content},
            tool_use_blocks=tool_use_blocks,
            stop_reason=response.stop_reason or "end_turn",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
        )
