"""Configuration via environment variables (CONVKEEPER_ prefix) or defaults."""

from __future__ import annotations

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    host: str = "127.0.0.1"
    port: int = 8765
    db_path: str = "data/convkeeper.sqlite"
    log_dir: str = "logs"
    log_level: str = "INFO"

    # Rotation policy
    rotation_timeout_hours: float = Field(default=4.0, gt=0)
    rotation_context_ratio: float = Field(default=0.8, gt=0, le=1)
    rotation_force_ratio: float = Field(default=0.9, gt=0, le=1)
    summary_enabled: bool = True
    max_recent_sessions: int = Field(default=3, ge=1)

    # Summarizer (Anthropic Messages API)
    summary_api_url: str = "https://api.anthropic.com"
    summary_model: str = "claude-haiku-4-5-20251001"
    api_key: str | None = None
    auth_token: str | None = None
    summary_max_chars: int = 8000
    summary_timeout_seconds: float = 120.0

    # Message queue
    rate_limit_default_wait_seconds: float = 300.0
    rate_limit_min_wait_seconds: float = 1.0
    typing_refresh_seconds: float = 4.0
    push_intermediate_messages: bool = True
    reply_log_max_length: int = 200
    user_state_ttl_seconds: int = Field(default=7200, gt=0)

    model_config = {"env_prefix": "CONVKEEPER_"}

    @model_validator(mode="after")
    def _check_ratio_order(self) -> "AppConfig":
        if self.rotation_force_ratio <= self.rotation_context_ratio:
            raise ValueError(
                "rotation_force_ratio "
                f"({self.rotation_force_ratio}) must exceed rotation_context_ratio "
                f"({self.rotation_context_ratio})"
            )
        return self
