"""Dependency providers and settings management."""

from functools import lru_cache
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    BACKEND_CORS_ORIGINS: str = "http://localhost:3000"

    # Redis Configuration (arq queue + per-key job locks)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Polling defaults; tenants may override them individually
    INSIGHTS_POLL_INTERVAL_MS: int = 2 * 60 * 1000
    STRUCTURE_POLL_INTERVAL_MS: int = 10 * 60 * 1000
    SCHEDULER_TICK_SECONDS: int = 15

    # Retry policy for queued jobs
    JOB_MAX_ATTEMPTS: int = 3
    JOB_BACKOFF_BASE_MS: int = 5000
    JOB_BACKOFF_STRATEGY: Literal["exponential", "fixed"] = "exponential"
    JOB_LOCK_TIMEOUT_SECONDS: int = 600
    FAILED_JOB_HISTORY_LIMIT: int = 100

    # Reconstruction / snapshots
    RECONSTRUCTION_BATCH_SIZE: int = 1000
    SNAPSHOT_COMPARISON: Literal["canonical", "serialized"] = "canonical"

    # Meta Marketing API
    META_API_VERSION: str = "v19.0"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.BACKEND_CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]
