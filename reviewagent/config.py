"""Reviewer agent configuration (OpenRouter through pydantic-ai)."""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional


class AgentConfig(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    openrouter_api_key: str = Field(default="sk-or-v1-placeholder")
    review_model: str = Field(default="openai/gpt-4o-mini")
    llm_timeout_seconds: float = Field(default=120.0)
    llm_max_output_tokens: int = Field(default=4096)
    enable_logfire: bool = Field(default=False)
    logfire_token: Optional[str] = Field(default=None)


config = AgentConfig()
