"""Service configuration for the webhook API and the review worker.

Values come from the process environment first, then from ``.env``.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        case_sensitive=False,
    )

    # GitHub App
    github_app_id: Optional[str] = Field(default=None)
    github_private_key: Optional[str] = Field(default=None)
    github_private_key_path: Optional[str] = Field(default=None)
    github_webhook_secret: str = Field(default="")
    github_api_url: str = Field(default="https://api.github.com")
    http_timeout_seconds: float = Field(default=30.0)
    token_refresh_margin_seconds: int = Field(default=60)

    # Token budget / LLM batching
    max_tokens_per_request: int = Field(default=5000)
    llm_delay_between_calls: float = Field(default=1.0)

    # Job runner
    job_concurrency: int = Field(default=2)
    job_max_attempts: int = Field(default=2)
    job_backoff_seconds: float = Field(default=1.0)
    rate_limit_max: int = Field(default=10)
    rate_limit_window_seconds: float = Field(default=1.0)

    # Cloud Tasks (durable queue). Unset worker URL => in-process runner.
    gcp_project_id: str = Field(default="")
    gcp_location: str = Field(default="us-central1")
    cloud_tasks_queue: str = Field(default="review-queue")
    review_worker_url: str = Field(default="")
    cloud_tasks_sa_email: str = Field(default="")

    store_backend: Literal["firestore", "memory"] = Field(default="firestore")
    log_level: str = Field(default="INFO")

    def load_private_key(self) -> str:
        """Return the PEM private key, either inline (``\\n`` escaped) or from a file."""
        if self.github_private_key:
            return self.github_private_key.replace("\\n", "\n")
        if self.github_private_key_path:
            with open(self.github_private_key_path, "r") as f:
                return f.read()
        raise ValueError("GitHub private key not provided")


@lru_cache
def get_settings() -> ServiceSettings:
    return ServiceSettings()
