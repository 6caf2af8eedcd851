"""Application settings loaded from the environment and an optional .env file."""
import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_pool_size() -> int:
    return max(1, min(os.cpu_count() or 1, 4))


class Settings(BaseSettings):
    """
    Runtime configuration for the processing pipeline and synthesis engine.

    Every field can be overridden with a ``DOCSHARE_``-prefixed environment
    variable (e.g. ``DOCSHARE_WORKER_TIMEOUT_SECONDS=60``).
    """

    database_url: str = "sqlite:///./docshare.db"
    log_level: str = "INFO"

    # Worker pool
    worker_pool_size: int = _default_pool_size()
    worker_timeout_seconds: float = 120.0
    worker_max_tasks_per_unit: Optional[int] = 50
    worker_max_memory_mb: Optional[int] = 2048
    worker_start_method: str = "spawn"

    # Scheduler
    scheduler_interval_seconds: float = 15.0
    # A claim older than the worker timeout plus this grace belongs to a dead scheduler
    scheduler_stale_claim_grace_seconds: float = 60.0

    # Synthesis policy
    synthesis_min_conversations: int = 1
    synthesis_min_messages: int = 5
    synthesis_timeout_seconds: float = 300.0

    model_config = SettingsConfigDict(
        env_prefix="DOCSHARE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide settings instance."""
    return Settings()
