"""Configuration settings for BackupChrono with caching utilities."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """BackupChrono process settings"""

    model_config = SettingsConfigDict(
        env_file=[".env.test", ".env"],
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "production"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    log_dir: Path = Path("./logs")

    # Storage locations
    config_file: Path = Path("./config/backupchrono.yaml")
    execution_log_path: Path = Path("./data/backup-execution-logs.jsonl")
    repository_base_path: Path = Path("./repositories")

    # Backup engine
    engine_binary: str = "restic"
    engine_password: SecretStr | None = None
    engine_terminate_timeout: float = 10.0

    # Scheduling
    max_concurrent_backups: int = Field(default=3, ge=1)
    scheduler_check_interval: float = Field(default=30.0, gt=0)
    retry_delays_minutes: list[int] = Field(default_factory=lambda: [5, 15, 45])
    completed_job_retention_minutes: int = 60

    # Device access
    wake_grace_seconds: float = 30.0
    connection_timeout_seconds: float = 10.0

    # Storage thresholds (percent of the repository filesystem in use)
    storage_critical_percent: float = 90.0
    storage_exhausted_percent: float = 95.0

    # Monitoring
    health_server_enabled: bool = False
    health_port: int = 8080

    @field_validator("retry_delays_minutes")
    @classmethod
    def validate_retry_delays(cls, v: list[int]) -> list[int]:
        """Retry delays must be positive."""
        if any(delay <= 0 for delay in v):
            raise ValueError("Retry delays must be positive minutes")
        return v

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment.lower() in ["development", "dev"]

    @property
    def is_testing(self) -> bool:
        """Check if running in testing mode"""
        return self.environment.lower() in ["testing", "test"]


_SETTINGS_LOCK = RLock()
_SETTINGS_CACHE: Settings | None = None


def get_settings(*, refresh: bool = False) -> Settings:
    """Return a cached ``Settings`` instance.

    Parameters
    ----------
    refresh:
        When ``True`` the cached instance is discarded and a new one is created.
    """

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        if refresh or _SETTINGS_CACHE is None:
            _SETTINGS_CACHE = Settings()
        return _SETTINGS_CACHE


def clear_settings_cache() -> None:
    """Clear the cached settings instance."""

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = None


@contextmanager
def override_settings(**overrides: Any) -> Iterator[Settings]:
    """Temporarily override the cached settings within a context."""

    global _SETTINGS_CACHE

    with _SETTINGS_LOCK:
        previous_settings = _SETTINGS_CACHE

    base_settings = previous_settings or Settings()
    patched_settings = base_settings.model_copy(update=overrides)

    with _SETTINGS_LOCK:
        _SETTINGS_CACHE = patched_settings

    try:
        yield patched_settings
    finally:
        with _SETTINGS_LOCK:
            _SETTINGS_CACHE = previous_settings
