"""
Application settings using Pydantic.

Provides environment-based configuration loading with CLOUDPLAN_ prefix.
"""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings."""

    # Worker pool
    max_workers: int = 4

    # Provider call retries (transient errors only)
    max_attempts: int = 3
    retry_backoff_factor: float = 0.5
    retry_max_wait: float = 30.0

    # Readiness polling
    poll_interval: float = 5.0
    readiness_timeout: float = 900.0

    # Overall run deadline in seconds (unbounded when unset)
    run_deadline: float | None = None

    # Delete resources that were adopted from a previous run during rollback
    rollback_adopted: bool = False

    # Logging
    log_level: str = "INFO"
    log_json: bool = True

    # Pre-flight checks
    preflight_require_root: bool = False
    preflight_connectivity_url: str | None = "https://checkip.amazonaws.com"
    preflight_connectivity_timeout: float = 5.0
    preflight_min_disk_gb: float = 1.0
    preflight_min_memory_mb: int = 512
    preflight_required_commands: list[str] = []

    # Provider
    provider: str = "memory"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        env_prefix = "CLOUDPLAN_"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
