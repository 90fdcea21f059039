"""API-layer configuration loaded from environment variables."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Self

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _split_csv(value: Any) -> Any:
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return value


class APISettings(BaseSettings):
    """FastAPI application and background job settings.

    All values can be overridden via environment variables prefixed with
    ``API_`` (e.g. ``API_OWNER_KEYS=key1,key2``) or through a ``.env`` file
    in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="API_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Database connection string (asyncpg in production, aiosqlite locally).
    database_url: str = "sqlite+aiosqlite:///.keymeter/state.db"
    database_pool_size: int = 10
    database_max_overflow: int = 20

    # Create tables on startup.  Production deployments run migrations instead.
    auto_create_tables: bool = True

    # Static tier keys, comma separated.  When both lists are empty every
    # caller is treated as owner (single-operator deployments).
    owner_keys: Annotated[list[str], NoDecode] = []
    public_keys: Annotated[list[str], NoDecode] = []

    # Shared secret for the internal administration router.  The router
    # rejects every call while this is unset.
    internal_token: SecretStr | None = None

    # Per-request timeouts.
    public_timeout_seconds: int = 30
    owner_timeout_seconds: int = 300
    customer_default_timeout_seconds: int = 300

    # Upload caps.
    public_max_files_per_request: int = 10
    public_max_total_upload_mb: int = 10
    public_max_dimension_px: int = 6000
    owner_max_files_per_request: int = 50
    max_upload_bytes_per_file: int = 10 * 1024 * 1024

    # Public-tier per-IP daily request limits, keyed by endpoint.
    public_daily_limits: dict[str, int] = {"h2i": 5, "image": 10, "pdf": 10, "tools": 10}

    # Expiry watcher.
    expiry_enabled: bool = True
    expiry_interval_seconds: float = 600.0
    expiry_initial_delay_seconds: float = 30.0
    expiry_batch_size: int = 500
    expiry_purge_enabled: bool = False

    # Orphan cleanup.
    orphan_cleanup_enabled: bool = True
    orphan_cleanup_interval_seconds: float = 86400.0
    orphan_cleanup_initial_delay_seconds: float = 300.0
    orphan_cleanup_batch_size: int = 5000

    # Retention cleanup.
    retention_enabled: bool = True
    retention_interval_seconds: float = 86400.0
    retention_initial_delay_seconds: float = 60.0
    retention_request_log_days: int = 60
    retention_usage_months: int = 6
    retention_batch_request_log: int = 20000
    retention_batch_usage: int = 5000
    retention_log_path: Path | None = None

    # Row-based job locks (non-PostgreSQL backends) expire after this long.
    job_lock_ttl_seconds: int = 3600

    # Emit single-line JSON logs.
    structured_logging: bool = False

    @field_validator("owner_keys", "public_keys", mode="before")
    @classmethod
    def _parse_key_list(cls, v: Any) -> Any:
        return _split_csv(v)

    @field_validator(
        "expiry_batch_size",
        "orphan_cleanup_batch_size",
        "retention_batch_request_log",
        "retention_batch_usage",
    )
    @classmethod
    def _validate_batch_size(cls, v: int) -> int:
        if v < 1:
            raise ValueError("batch sizes must be >= 1")
        return v

    @model_validator(mode="after")
    def _validate_retention_thresholds(self) -> Self:
        """Reject retention windows that would delete the current period."""
        if self.retention_request_log_days < 1:
            raise ValueError("retention_request_log_days must be >= 1")
        if self.retention_usage_months < 1:
            raise ValueError("retention_usage_months must be >= 1")
        return self

    @property
    def tier_keys_configured(self) -> bool:
        return bool(self.owner_keys or self.public_keys)


def load_api_settings(**overrides: Any) -> APISettings:
    """Construct settings from the environment / ``.env`` file."""
    return APISettings(**overrides)
