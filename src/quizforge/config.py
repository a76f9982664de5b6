"""Centralized application configuration via environment variables."""

from enum import StrEnum
from functools import lru_cache
from pathlib import Path

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(StrEnum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"
    TESTING = "testing"


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All provider credentials use SecretStr to prevent accidental logging.
    Chunking knobs come in two throughput classes: "fast" models
    (high tokens-per-minute limits) get larger chunks and shorter
    pauses, "standard" models get smaller chunks and longer pauses.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- App ---
    environment: Environment = Environment.DEVELOPMENT
    log_level: str = "INFO"

    # --- LLM credentials ---
    anthropic_api_key: SecretStr | None = None
    openai_api_key: SecretStr | None = None
    deepseek_api_key: SecretStr | None = None
    gemini_api_key: SecretStr | None = None

    # --- LLM default models ---
    anthropic_default_model: str = "claude-3-haiku-20240307"
    openai_default_model: str = "gpt-4o-mini"
    deepseek_default_model: str = "deepseek-chat"
    gemini_default_model: str = "gemini-2.5-flash"

    # DeepSeek speaks the OpenAI wire format on its own endpoint.
    deepseek_base_url: str = "https://api.deepseek.com"

    # --- Retry / backoff ---
    # 0 disables the retry loop; any positive value means at least 3 attempts.
    llm_max_retries: int = 3
    llm_backoff_base_seconds: float = 1.0

    # --- Cache ---
    llm_cache_ttl_seconds: float = 3600.0

    # --- Provider fallback ---
    llm_fallback_provider: str = "openai"

    # --- Model catalog ---
    # None -> catalog shipped with the package (quizforge/llm/models.yaml).
    model_catalog_path: Path | None = None

    # --- Chunked generation ---
    chunk_size_chars_fast: int = 40_000
    chunk_size_chars_standard: int = 20_000
    inter_chunk_delay_fast: float = 1.0
    inter_chunk_delay_standard: float = 5.0
    chunk_retry_cooldown_fast: float = 10.0
    chunk_retry_cooldown_standard: float = 30.0
    single_call_token_limit_fast: int = 20_000
    single_call_token_limit_standard: int = 8_000
    chunk_max_retries: int = 3

    # --- Convenience properties ---
    @property
    def is_dev(self) -> bool:
        return self.environment == Environment.DEVELOPMENT

    @property
    def is_prod(self) -> bool:
        return self.environment == Environment.PRODUCTION

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TESTING

    @property
    def retries_enabled(self) -> bool:
        return self.llm_max_retries > 0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor.

    Usage::

        from quizforge.config import get_settings
        settings = get_settings()
    """
    return Settings()
