"""Application settings loaded from environment variables.

Variable names match the ones the deletion job has always been triggered
with (``DB_URL``, ``AMP_BATCH_SIZE`` ...), so existing job definitions keep
working unchanged.
"""

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AMPLITUDE_API_URL = "https://amplitude.com/api/2/deletions/users"

_UNBOUNDED_CHUNK_VALUES = {"", "inf", "infinity", "unbounded", "none", "0"}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application Configuration
    ENVIRONMENT: Literal["development", "test", "production"] = "development"
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"

    # Request
    request_id: str | None = None
    requested_by: str = "unknown"
    reason: str | None = None
    dry_run: bool = False
    ids_json: Path = Path("ids.json")
    report_dir: Path = Path(".")

    # Relational store
    db_url: SecretStr | None = None
    sql_path: Path = Path("sql/gdpr-deletion.sql")
    db_chunk_size: int | None = None
    """Identifiers per transaction; None stages everything in one chunk."""

    db_stmt_timeout_ms: int = 300_000
    db_pool_size: int = 2
    db_record_audit: bool = False

    # External analytics service
    amplitude_api_url: str = DEFAULT_AMPLITUDE_API_URL
    amplitude_key: SecretStr | None = None
    amplitude_secret_key: SecretStr | None = None
    amp_batch_size: int = 300
    amp_concurrency: int = 4
    amp_max_attempts: int = 5
    amp_backoff_base_ms: int = 1000
    amp_backoff_cap_ms: int = 15_000
    amp_backoff_jitter_ms: int = 250
    amp_timeout_s: float = 30.0

    @field_validator("db_chunk_size", mode="before")
    @classmethod
    def parse_unbounded_chunk_size(cls, value: Any) -> Any:
        """Treat empty, zero and infinity-like values as unbounded."""
        if value is None:
            return None
        if isinstance(value, str) and value.strip().lower() in _UNBOUNDED_CHUNK_VALUES:
            return None
        if value == 0:
            return None
        return value

    @field_validator("request_id", "reason", mode="before")
    @classmethod
    def blank_as_none(cls, value: Any) -> Any:
        """Empty strings from the job trigger mean "not supplied"."""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    def get_db_url(self) -> str | None:
        """Get the plain database URL, or None if not configured."""
        return self.db_url.get_secret_value() if self.db_url else None


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
