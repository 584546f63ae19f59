"""Configuration for the FastAPI service."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Service settings loaded from environment variables."""

    # OpenAI
    OPENAI_API_KEY: str
    OPENAI_CHAT_MODEL: str = "gpt-4.1-mini"

    # Documents
    DOCUMENT_ROOT: str

    # Optional clarification persistence
    DATABASE_URL: str | None = None

    # Pipeline behaviour
    BLOCKING_PRIORITY_THRESHOLD: int = 8
    AUTO_RESOLVE_CONFIDENCE: float = 0.95
    PAUSE_POLICY: str = "end_of_batch"
    ALL_FAILED_POLICY: str = "error"

    # Progress events
    EVENT_BUFFER_SIZE: int = 256
    EVENT_HISTORY_SIZE: int = 100
    SSE_HEARTBEAT_SECONDS: float = 15.0

    # Session eviction
    SESSION_TTL_SECONDS: float = 3600.0
    EVICTION_INTERVAL_SECONDS: float = 60.0

    # Auth
    WORKER_API_KEY: str


@lru_cache
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()
