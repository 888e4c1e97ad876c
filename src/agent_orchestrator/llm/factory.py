"""Provider construction from explicit config or settings."""

from typing import get_args

import structlog

from agent_orchestrator.config import ProviderName, Settings, get_settings
from agent_orchestrator.errors import ConfigurationError
from agent_orchestrator.llm import anthropic, ollama, openai, openrouter
from agent_orchestrator.llm.base import BaseProvider, ProviderConfig

logger = structlog.get_logger()

PROVIDERS: dict[str, type[BaseProvider]] = {
    "openai": openai.OpenAIProvider,
    "anthropic": anthropic.AnthropicProvider,
    "openrouter": openrouter.OpenRouterProvider,
    "ollama": ollama.OllamaProvider,
}

DEFAULT_BASE_URLS: dict[str, str] = {
    "openai": openai.DEFAULT_BASE_URL,
    "anthropic": anthropic.DEFAULT_BASE_URL,
    "openrouter": openrouter.DEFAULT_BASE_URL,
    "ollama": ollama.DEFAULT_BASE_URL,
}

# Local backends run without credentials
KEYLESS_PROVIDERS = frozenset({"ollama"})


def get_default_base_url(provider_type: str) -> str:
    try:
        return DEFAULT_BASE_URLS[provider_type]
    except KeyError:
        raise ConfigurationError(f"Unknown provider type: {provider_type}") from None


def create_provider(provider_type: str, config: ProviderConfig) -> BaseProvider:
    """Build an adapter for `provider_type`.

    Raises:
        ConfigurationError: unknown type, or a remote backend without an API key.
    """
    provider_cls = PROVIDERS.get(provider_type)
    if provider_cls is None:
        raise ConfigurationError(
            f"Unknown provider type: {provider_type}. Expected one of {', '.join(get_args(ProviderName))}"
        )
    if provider_type not in KEYLESS_PROVIDERS and not config.api_key:
        raise ConfigurationError(f"API key is required for provider {provider_type}")

    logger.debug("llm_provider_created", provider=provider_type, model=config.model, base_url=config.base_url)
    return provider_cls(config)


def create_provider_from_settings(settings: Settings | None = None) -> BaseProvider:
    settings = settings or get_settings()
    config = ProviderConfig(
        base_url=settings.llm_base_url or get_default_base_url(settings.llm_provider),
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        timeout=settings.llm_timeout_seconds,
    )
    return create_provider(settings.llm_provider, config)
