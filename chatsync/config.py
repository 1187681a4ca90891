from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Durable mirror of the chat store - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Shared secret for signed provider events - required from .env
    WEBHOOK_SECRET: str

    # Messaging provider bridge
    PROVIDER_BASE_URL: str = "http://localhost:3001"
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    # Queues
    SESSION_QUEUE_SIZE: int = 100
    EVENT_QUEUE_SIZE: int = 1000

    # Deduplication of at-least-once provider deliveries
    DEDUP_WINDOW_MS: int = 1000
    # 0 scans the whole chat
    DEDUP_SCAN_LIMIT: int = 0

    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:5174",
        "http://localhost:4173",
        "http://localhost:4174",
    ]


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
