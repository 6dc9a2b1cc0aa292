# =============================================================================
# Application Configuration — Pydantic Settings
# =============================================================================
#
# All tunables for the search engine live here: OpenAI credentials, the
# assistant lifecycle, run polling, both TTL caches, and localization.
#
# Pydantic Settings loads values in this priority order (highest first):
#   1. Environment variables (e.g., `VECTOR_STORE_ID=...`)
#   2. Values from the .env file
#   3. Default values defined below
#
# USAGE:
#   from citesearch.config import settings
#   print(settings.assistant_model)
# =============================================================================

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    Defaults match the production deployment except for credentials,
    which must always come from the environment.
    """

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------
    app_name: str = "Citation Search Engine"
    app_version: str = "1.0.0"
    # When True, raw upstream error text is attached to error responses
    # under "details". Never enable in production.
    debug: bool = False

    # -------------------------------------------------------------------------
    # OpenAI — Assistant service
    # -------------------------------------------------------------------------
    openai_api_key: str = ""
    openai_base_url: str | None = None
    assistant_model: str = "gpt-4o-mini"
    assistant_name: str = "Theology RAG Assistant"

    # Default retrieval store bound to the assistant. When unset, the
    # assistant is created without the file_search tool.
    vector_store_id: str | None = None

    # -------------------------------------------------------------------------
    # Assistant lifecycle
    # -------------------------------------------------------------------------
    # Backoff between creation attempts is attempt * delay, capped at
    # max_delay: 1s, 2s, 3s with the defaults.
    # -------------------------------------------------------------------------
    assistant_creation_attempts: int = 3
    assistant_retry_delay_seconds: float = 1.0
    assistant_retry_max_delay_seconds: float = 3.0

    warmup_enabled: bool = True
    warmup_interval_seconds: float = 600.0

    # -------------------------------------------------------------------------
    # Run polling
    # -------------------------------------------------------------------------
    # After a run is submitted we wait run_initial_delay_seconds, then poll:
    #   - the first 3 checks every run_fast_poll_seconds
    #   - then a geometrically growing interval capped at 1s, later
    #     at run_max_poll_seconds
    # run_max_attempts bounds the loop (~60 seconds of wall time).
    # -------------------------------------------------------------------------
    run_initial_delay_seconds: float = 3.0
    run_fast_poll_seconds: float = 0.2
    run_max_poll_seconds: float = 2.0
    run_max_attempts: int = 60

    # -------------------------------------------------------------------------
    # Caching
    # -------------------------------------------------------------------------
    # result_cache_ttl_seconds = 0 disables answer caching entirely
    # (concurrent duplicate requests are still coalesced).
    # result_cache_backend: "memory" (per-process) or "redis" (shared).
    # -------------------------------------------------------------------------
    result_cache_ttl_seconds: float = 1800.0
    result_cache_max_entries: int = 100
    result_cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/2"

    vector_store_cache_ttl_seconds: float = 6 * 60 * 60

    # -------------------------------------------------------------------------
    # Localization
    # -------------------------------------------------------------------------
    author_translations_path: str = "config/author-translations.json"
    default_language: str = "zh"
    localized_languages: list[str] = ["zh"]
    source_excerpt_max_chars: int = 120

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """
    Create and cache a Settings instance.

    In tests, build the app with explicit settings instead:
        create_app(settings=Settings(debug=True), coordinator=...)
    """
    return Settings()


settings = Settings()
