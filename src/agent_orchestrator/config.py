"""Configuration for the agent orchestrator.

Settings are read from the environment (and an optional `.env` file).

Usage:
    from agent_orchestrator.config import get_settings

    settings = get_settings()
    settings.max_global_workers
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ProviderName = Literal["openai", "anthropic", "openrouter", "ollama"]


class Settings(BaseSettings):
    """Orchestrator settings from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    service_name: str = Field(default="agent_orchestrator")
    log_format: Literal["json", "console"] = Field(default="console")
    log_level: str = Field(default="INFO")

    # Events
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for event publication. Events stay in-process when unset.",
    )
    events_prefix: str = "orchestrator"

    # Task store
    api_url: str = Field(
        default="http://api:8000/api",
        description="Internal API service URL (must include /api prefix)",
    )

    # Workspaces
    workspace_base_dir: str = "/tmp/agent-workspaces"
    workspace_max_age_seconds: int = Field(default=3600, ge=1)

    # Containers
    docker_base_url: str | None = None
    sandbox_image: str = "agent-sandbox:latest"
    stop_kill_grace_seconds: float = Field(default=5.0, ge=0)
    command_timeout_seconds: int = Field(default=300, ge=1)

    # Admission limits
    max_global_workers: int = Field(default=10, ge=1)
    max_workers_per_repo: int = Field(default=3, ge=1)
    max_workers_per_user: int = Field(default=5, ge=1)

    # LLM backend
    llm_provider: ProviderName = "openrouter"
    llm_model: str = "anthropic/claude-3.5-sonnet"
    llm_api_key: str | None = None
    llm_base_url: str | None = None
    llm_timeout_seconds: float = Field(default=120.0, gt=0)

    # Agent loop
    agent_max_iterations: int = Field(default=20, ge=1)

    # Background maintenance
    reaper_interval_seconds: int = Field(default=60, ge=1)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper_v = v.upper()
        if upper_v not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return upper_v


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
