from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from agent_fleet_loop.tool import Tool

TextCallback = Callable[[str], None]

_OLLAMA_DEFAULT_URL = "http://localhost:11434/v1"


@dataclass
class ChatTurn:
    """One assistant reply in internal (Anthropic-style) block format."""

    message: dict
    tool_use_blocks: list[dict] = field(default_factory=list)
    stop_reason: str = "end_turn"
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def text(self) -> str:
        return "".join(b.get("text", "") for b in self.message.get("content", []) if b.get("type") == "text")


@runtime_checkable
class LLMProvider(Protocol):
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
        """Stream a chat response, passing text deltas to ``on_text`` as they arrive."""
        ...

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        ...


def create_provider(provider_name: str, api_key: str | None, *, base_url: str | None = None) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from agent_fleet_loop.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key, base_url=base_url)
    if name == "openai":
        from agent_fleet_loop.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, base_url=base_url)
    if name == "ollama":
        from agent_fleet_loop.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key, base_url=base_url or _OLLAMA_DEFAULT_URL)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai', 'ollama'")
