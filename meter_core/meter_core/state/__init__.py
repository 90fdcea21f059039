"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from meter_core.state.database import create_tables, get_engine, get_session
from meter_core.state.locks import NamedLock
from meter_core.state.repository import (
    ApiKeyRepository,
    JobLockRepository,
    PlanRepository,
    RequestLogRepository,
    UsageRepository,
)
from meter_core.state.schema_guard import SchemaGuard

__all__ = [
    "ApiKeyRepository",
    "JobLockRepository",
    "NamedLock",
    "PlanRepository",
    "RequestLogRepository",
    "SchemaGuard",
    "UsageRepository",
    "create_tables",
    "get_engine",
    "get_session",
]
