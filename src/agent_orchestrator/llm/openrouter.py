"""OpenRouter adapter. Same wire format as OpenAI under a different path."""

from agent_orchestrator.llm.openai import OpenAIProvider

DEFAULT_BASE_URL = "https://openrouter.ai"
APP_REFERER = "https://github.com/agent-orchestrator"
APP_TITLE = "Agent Orchestrator"


class OpenRouterProvider(OpenAIProvider):
    name = "openrouter"
    chat_path = "api/v1/chat/completions"

    def get_headers(self) -> dict[str, str]:
        headers = super().get_headers()
        headers["HTTP-Referer"] = APP_REFERER
        headers["X-Title"] = APP_TITLE
        return headers
