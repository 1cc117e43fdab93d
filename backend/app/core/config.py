"""
Application configuration via environment variables (12-factor).
Pydantic BaseSettings validates and coerces all values at startup.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

# Placeholder credential shipped in example .env files; treated as "no key".
DEV_PLACEHOLDER_KEY = "dummy-key-for-development"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # ------------------------------------------------------------------
    # Document store
    # ------------------------------------------------------------------
    document_store_backend: str = "memory"   # "memory" | "sql"
    database_url: str = ""                   # asyncpg DSN, required for "sql"

    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_echo_sql: bool = False   # set True in local dev to log queries

    # ------------------------------------------------------------------
    # Uploads
    # ------------------------------------------------------------------
    upload_dir:       str = "uploads"
    max_upload_bytes: int = 25 * 1024 * 1024
    allowed_extensions: list[str] = [
        ".pdf", ".docx", ".doc", ".txt", ".md", ".csv", ".json", ".xml", ".html",
    ]

    # ------------------------------------------------------------------
    # Provider credentials
    # ------------------------------------------------------------------
    openai_api_key:     str = ""
    anthropic_api_key:  str = ""
    google_api_key:     str = ""
    perplexity_api_key: str = ""
    perplexity_base_url: str = "https://api.perplexity.ai"

    # ------------------------------------------------------------------
    # LLM call shaping
    # ------------------------------------------------------------------
    llm_temperature:     float = 0.0
    llm_max_tokens:      int   = 2000
    llm_request_timeout: float = 30.0    # seconds, whole remote-tier call
    llm_max_input_chars: int   = 4000

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------
    default_llm_provider:          str = "llama"
    large_document_page_threshold: int = 10

    # ------------------------------------------------------------------
    # Pattern tier
    # ------------------------------------------------------------------
    pattern_min_metrics: int = 3   # succeeds with strictly more than this

    # ------------------------------------------------------------------
    # Update broadcaster / SSE
    # ------------------------------------------------------------------
    subscriber_queue_size:  int   = 100
    sse_keepalive_seconds:  float = 15.0
    sse_stream_ttl_seconds: int   = 3600

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    langsmith_api_key: str = ""
    langsmith_project: str = "document-orchestrator"
    log_level:         str = "INFO"

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------
    app_env: str = "development"   # development | staging | production
    debug: bool = False
    cors_origins: list[str] = ["*"]

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


def is_configured(secret: str | None) -> bool:
    """True when a credential is present and is not the dev placeholder."""
    return bool(secret) and secret.strip() not in ("", DEV_PLACEHOLDER_KEY)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
