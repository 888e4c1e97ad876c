from agent_orchestrator.llm.anthropic import AnthropicProvider
from agent_orchestrator.llm.base import (
    BaseProvider,
    ChatChunk,
    ChatOptions,
    LLMProvider,
    Message,
    ProviderConfig,
    Tool,
    ToolCall,
    ToolCallResult,
    Usage,
)
from agent_orchestrator.llm.factory import (
    create_provider,
    create_provider_from_settings,
    get_default_base_url,
)
from agent_orchestrator.llm.ollama import OllamaProvider
from agent_orchestrator.llm.openai import OpenAIProvider
from agent_orchestrator.llm.openrouter import OpenRouterProvider

__all__ = [
    "AnthropicProvider",
    "BaseProvider",
    "ChatChunk",
    "ChatOptions",
    "LLMProvider",
    "Message",
    "OllamaProvider",
    "OpenAIProvider",
    "OpenRouterProvider",
    "ProviderConfig",
    "Tool",
    "ToolCall",
    "ToolCallResult",
    "Usage",
    "create_provider",
    "create_provider_from_settings",
    "get_default_base_url",
]
