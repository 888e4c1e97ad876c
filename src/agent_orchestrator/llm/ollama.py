"""Ollama adapter. OpenAI-compatible streaming, no tool calling."""

from agent_orchestrator.errors import ProviderError
from agent_orchestrator.llm.base import Message, Tool, ToolCallResult
from agent_orchestrator.llm.openai import OpenAIProvider

DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaProvider(OpenAIProvider):
    name = "ollama"

    def supports_tool_calling(self) -> bool:
        return False

    async def call_with_tools(self, messages: list[Message], tools: list[Tool]) -> ToolCallResult:
        raise ProviderError(
            "Tool calling is not supported by the Ollama provider. "
            "Use a different provider for tool calling functionality."
        )
