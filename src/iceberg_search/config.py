"""Application configuration via pydantic-settings."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """All runtime configuration, loaded from environment / .env file.

    Provider credentials are optional: an adapter without credentials serves
    its deterministic mock result set instead of calling the vendor.
    """

    tavily_api_key: str | None = None
    exa_api_key: str | None = None
    google_api_key: str | None = None
    google_cse_id: str | None = None
    openrouter_api_key: str | None = None
    anthropic_api_key: str | None = None

    llm_backend: Literal["openrouter", "anthropic"] = "openrouter"
    default_model: str = "openai/gpt-3.5-turbo"
    anthropic_model: str = "claude-haiku-4-5"
    app_url: str = "https://iceberg.ai"
    app_title: str = "Iceberg Search"

    redis_url: str | None = "redis://localhost:6379/0"
    search_cache_ttl_seconds: int = 600
    enhancement_cache_ttl_seconds: int = 1800
    cache_sweep_interval_seconds: float = 60.0
    health_check_interval_seconds: float = 900.0

    provider_timeout_seconds: float = 15.0
    search_deadline_seconds: float = 30.0
    request_timeout_seconds: float = 55.0
    enhancement_timeout_seconds: float = 30.0
    fetch_concurrency: int = 2
    min_provider_weight: float = 0.2
    provider_max_retries: int = 1
    provider_retry_delay_seconds: float = 1.0
    mock_on_provider_failure: bool = False
    dedup_strategy: Literal["keep_first", "merge"] = "keep_first"

    port: int = 7777
    log_level: str = "INFO"
    environment: str = "development"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


# Module-level singleton; imported everywhere.
settings = Settings()
