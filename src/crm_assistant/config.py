"""Configuration for the assistant using pydantic-settings."""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

_PACKAGE_DIR = Path(__file__).resolve().parent
_PROJECT_ROOT = _PACKAGE_DIR.parent.parent  # src/crm_assistant/ → project root


class Settings(BaseSettings):
    """All assistant settings, loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=str(_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Generation providers
    # ------------------------------------------------------------------
    openai_api_key: str = ""
    mistral_api_key: str = ""
    default_model: str = "gpt-4o-mini"
    generation_timeout_seconds: float = 30.0

    # ------------------------------------------------------------------
    # Circuit breaker
    # Disabled providers stay disabled until an operator re-enables them.
    # ------------------------------------------------------------------
    circuit_breaker_threshold: int = 3
    reset_failures_on_success: bool = True

    # ------------------------------------------------------------------
    # Conversation context
    # ------------------------------------------------------------------
    token_threshold: int = 4000
    max_response_tokens: int = 1000
    chat_temperature: float = 0.7
    summary_max_tokens: int = 500
    summary_temperature: float = 0.3
    recent_turns_without_summary: int = 8
    recent_turns_with_summary: int = 3

    # ------------------------------------------------------------------
    # Embeddings / similarity search
    # ------------------------------------------------------------------
    embedding_api_key: str | None = None
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: int = 1536
    embedding_timeout_seconds: float = 30.0
    similarity_default_k: int = 5

    # ------------------------------------------------------------------
    # Rate limiting (per user, enforced before the orchestrator)
    # ------------------------------------------------------------------
    rate_limit_max_messages: int = 5
    rate_limit_min_interval_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    chat_db_path: Path = _PROJECT_ROOT / "database" / "crm_assistant.sqlite"

    # ------------------------------------------------------------------
    # Auth (JWT). Set AUTH_ENABLED=false to disable for development
    # ------------------------------------------------------------------
    auth_enabled: bool = True
    jwt_secret: str = "dev-secret-change-in-production!!"
    jwt_expiry_hours: int = 24

    # ------------------------------------------------------------------
    # Logging / observability
    # ------------------------------------------------------------------
    log_level: str = "INFO"
    log_json: bool = False
    observability: str = "off"
    otel_service_name: str = "crm-assistant"
    otel_exporter_otlp_endpoint: str = "http://localhost:4318"
    otel_console_exporter: bool = False

    @property
    def resolved_embedding_api_key(self) -> str:
        """Embedding key, falling back to the OpenAI chat key."""
        return self.embedding_api_key or self.openai_api_key

    def validate_runtime(self) -> None:
        """Check that the values needed to serve chat traffic are present.

        Call this at application startup (not at import time) so that
        tests can override settings before validation runs.
        """
        if not self.openai_api_key and not self.mistral_api_key:
            raise ValueError(
                "No AI API keys configured. Set OPENAI_API_KEY or MISTRAL_API_KEY in .env"
            )
        if self.token_threshold <= 0:
            raise ValueError("TOKEN_THRESHOLD must be positive")
        if self.circuit_breaker_threshold < 1:
            raise ValueError("CIRCUIT_BREAKER_THRESHOLD must be at least 1")


@lru_cache
def get_settings() -> Settings:
    """Return the cached Settings singleton."""
    return Settings()
