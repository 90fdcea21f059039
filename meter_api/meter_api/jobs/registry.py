"""Construct reconciler jobs from :class:`~meter_api.config.APISettings`."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from meter_api.config import APISettings
from meter_api.jobs.base import ReconcilerJob
from meter_api.jobs.expiry_watcher import ExpiryWatcher
from meter_api.jobs.orphan_cleanup import OrphanCleanup
from meter_api.jobs.retention_cleanup import RetentionCleanup

# Short names used by the CLI.
JOB_NAMES: tuple[str, ...] = ("expiry", "orphans", "retention")


def _job_kwargs(name: str, settings: APISettings) -> dict[str, Any]:
    if name == "expiry":
        return {
            "enabled": settings.expiry_enabled,
            "interval_seconds": settings.expiry_interval_seconds,
            "initial_delay_seconds": settings.expiry_initial_delay_seconds,
            "batch_size": settings.expiry_batch_size,
            "purge_enabled": settings.expiry_purge_enabled,
        }
    if name == "orphans":
        return {
            "enabled": settings.orphan_cleanup_enabled,
            "interval_seconds": settings.orphan_cleanup_interval_seconds,
            "initial_delay_seconds": settings.orphan_cleanup_initial_delay_seconds,
            "batch_size": settings.orphan_cleanup_batch_size,
        }
    if name == "retention":
        return {
            "enabled": settings.retention_enabled,
            "interval_seconds": settings.retention_interval_seconds,
            "initial_delay_seconds": settings.retention_initial_delay_seconds,
            "request_log_days": settings.retention_request_log_days,
            "usage_months": settings.retention_usage_months,
            "batch_request_log": settings.retention_batch_request_log,
            "batch_usage": settings.retention_batch_usage,
            "log_path": settings.retention_log_path,
        }
    raise ValueError(f"Unknown job {name!r}; expected one of {', '.join(JOB_NAMES)}")


_JOB_CLASSES: dict[str, type[ReconcilerJob]] = {
    "expiry": ExpiryWatcher,
    "orphans": OrphanCleanup,
    "retention": RetentionCleanup,
}


def build_job(name: str, engine: AsyncEngine, settings: APISettings, **overrides: Any) -> ReconcilerJob:
    """Build one job by short name; *overrides* replace settings-derived arguments."""
    kwargs = _job_kwargs(name, settings)
    kwargs["lock_ttl_seconds"] = settings.job_lock_ttl_seconds
    kwargs.update({k: v for k, v in overrides.items() if v is not None})
    return _JOB_CLASSES[name](engine, **kwargs)


def build_jobs(engine: AsyncEngine, settings: APISettings) -> list[ReconcilerJob]:
    """Build every job, enabled or not; disabled jobs ignore ``start()``."""
    return [build_job(name, engine, settings) for name in JOB_NAMES]
