"""Application settings loaded from environment variables.

Values are read from the host environment or a ``.env`` file, using the
``AELYRA_`` prefix (``AELYRA_GEMINI_API_KEY``, ``AELYRA_SHARE_TTL_DAYS``...).
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global configuration for the chat service."""

    model_config = SettingsConfigDict(
        env_prefix="AELYRA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Generation gateway
    gemini_api_key: Optional[str] = None
    gemini_model: str = "gemini-1.5-flash"
    gemini_temperature: float = 0.7
    gemini_max_tokens: int = 2048
    title_max_tokens: int = 20
    generation_timeout_seconds: float = 60.0
    rate_limit_retry_after_seconds: int = 25

    # Sharing
    frontend_url: str = "http://localhost:5173"
    share_ttl_days: int = 30
    share_token_attempts: int = 5
    sweep_policy: Literal["delete", "expire"] = "delete"

    # History
    default_page_size: int = 20
    max_page_size: int = 100

    # Per-chat write lease
    lease_timeout_seconds: float = 120.0

    # HTTP request throttling
    request_rate_limit: int = 100
    request_rate_window_seconds: int = 900
    cors_origins: List[str] = ["*"]

    # Logging
    log_level: str = "INFO"
    log_json: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()
