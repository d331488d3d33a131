"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Milestone API
    api_base_url: str = "http://localhost:3000/api/pipetrak"
    api_token: str = ""
    api_timeout_seconds: float = 15.0

    # Redis
    redis_url: str = "redis://redis:6379"

    # Offline persistence backend: memory, file or redis
    milestone_storage_backend: str = "file"
    milestone_storage_dir: str = ".pipetrak"
    milestone_storage_key: str = "milestone_offline_state"

    # Retry policy. A backoff factor of 1.0 keeps the delay fixed between attempts.
    milestone_max_retries: int = 2
    milestone_retry_delay_seconds: float = 0.25
    milestone_retry_backoff_factor: float = 1.0
    # How often queued offline updates are retried while connectivity is flaky
    milestone_retry_loop_seconds: float = 30.0
    # How long a confirmed update counts as a "recent success" for UI feedback
    milestone_success_ttl_seconds: float = 2.0

    # Session
    local_user_id: str = ""
    log_level: str = "info"

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
