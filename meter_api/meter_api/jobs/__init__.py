"""Background reconciler jobs."""

from __future__ import annotations

from meter_api.jobs.base import JobResult, ReconcilerJob
from meter_api.jobs.expiry_watcher import ExpiryWatcher
from meter_api.jobs.orphan_cleanup import OrphanCleanup
from meter_api.jobs.registry import JOB_NAMES, build_job, build_jobs
from meter_api.jobs.retention_cleanup import RetentionCleanup

__all__ = [
    "JOB_NAMES",
    "ExpiryWatcher",
    "JobResult",
    "OrphanCleanup",
    "ReconcilerJob",
    "RetentionCleanup",
    "build_job",
    "build_jobs",
]
