"""SQLAlchemy 2.0 ORM table definitions for the keymeter state store.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by the repository layer, the schema guard and the reconciler jobs.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")

# Big integers autoincrement only as INTEGER PRIMARY KEY on SQLite.
_BigIdType = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    SQLite has no timezone support and hands back naive values; those are
    re-tagged as UTC on the way out.  Aware values are normalised to UTC on
    the way in so stored instants compare correctly on every backend.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all keymeter tables."""


# ---------------------------------------------------------------------------
# Plans
# ---------------------------------------------------------------------------


class PlanTable(Base):
    """Named bundle of quota and per-request limits.

    Plans are maintained by an external catalogue sync; the gate only reads
    them.  ``None`` on a limit column means "no limit", and ``None`` on an
    ``allow_*`` flag means the endpoint is allowed.
    """

    __tablename__ = "plans"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    plan_slug: Mapped[str] = mapped_column(String(64), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    monthly_quota_files: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_files_per_request: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_total_upload_mb: Mapped[int | None] = mapped_column(Integer, nullable=True)
    max_dimension_px: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timeout_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    allow_h2i: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    allow_image: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    allow_pdf: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    allow_tools: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    is_free: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    billing_period: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (UniqueConstraint("plan_slug", name="uq_plans_slug"),)


# ---------------------------------------------------------------------------
# API keys
# ---------------------------------------------------------------------------


class ApiKeyTable(Base):
    """Customer API keys.

    The plaintext key is shown exactly once at issuance.  Only the
    algorithm-tagged hash is stored; ``key_prefix`` (first 16 characters)
    is the indexed lookup column and ``key_last4`` is kept for display.

    Expiry is a two-stage sub-machine::

        active --(valid_until passed)--> disabled(reason="expired") --> purged

    ``disabled_reason`` records why a row left the active state so the
    terminal purge only ever removes rows the expiry stage itself disabled.
    """

    __tablename__ = "api_keys"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    key_prefix: Mapped[str | None] = mapped_column(String(32), nullable=True)
    key_hash: Mapped[str | None] = mapped_column(String(255), nullable=True)
    key_last4: Mapped[str | None] = mapped_column(String(8), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    disabled_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)
    plan_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("plans.id", ondelete="SET NULL"), nullable=True
    )
    customer_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    customer_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    subscription_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    subscription_status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    license_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    valid_from: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    valid_until: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    rotated_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    plan: Mapped[PlanTable | None] = relationship(lazy="joined")

    __table_args__ = (
        Index("ix_api_keys_prefix", "key_prefix"),
        Index("ix_api_keys_subscription", "subscription_id"),
        Index("ix_api_keys_email", "customer_email"),
        Index("ix_api_keys_status_valid_until", "status", "valid_until"),
    )


# ---------------------------------------------------------------------------
# Usage ledger
# ---------------------------------------------------------------------------


class UsagePeriodTable(Base):
    """Cumulative usage counters for one key within one period.

    Exactly one row per ``(api_key_id, period)``; rows are created lazily on
    first use of a period.
    """

    __tablename__ = "usage_periods"

    id: Mapped[int] = mapped_column(_BigIdType, primary_key=True, autoincrement=True)
    api_key_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False
    )
    period: Mapped[str] = mapped_column(String(64), nullable=False)
    used_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    used_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    total_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_files_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    bytes_in: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bytes_out: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    h2i_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    h2i_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pdf_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pdf_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tools_calls: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tools_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_activity_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("api_key_id", "period", name="uq_usage_periods_key_period"),
        Index("ix_usage_periods_created_at", "created_at"),
    )


# ---------------------------------------------------------------------------
# Request log
# ---------------------------------------------------------------------------


class RequestLogTable(Base):
    """Append-only audit row per customer-tier request."""

    __tablename__ = "request_log"

    id: Mapped[int] = mapped_column(_BigIdType, primary_key=True, autoincrement=True)
    api_key_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("api_keys.id", ondelete="CASCADE"), nullable=False
    )
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    endpoint: Mapped[str] = mapped_column(String(32), nullable=False)
    action: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    ip: Mapped[str | None] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(512), nullable=True)
    bytes_in: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bytes_out: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    files_processed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    params_json: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_request_log_key_timestamp", "api_key_id", "timestamp"),
        Index("ix_request_log_created_at", "created_at"),
    )


# ---------------------------------------------------------------------------
# Job locks
# ---------------------------------------------------------------------------


class JobLockTable(Base):
    """Row-based named locks for backends without session advisory locks.

    PostgreSQL uses ``pg_try_advisory_lock`` instead and never touches this
    table.  A row whose ``expires_at`` has passed belongs to a crashed
    holder and is reaped on the next acquisition attempt.
    """

    __tablename__ = "job_locks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_name: Mapped[str] = mapped_column(String(128), nullable=False)
    holder: Mapped[str] = mapped_column(String(128), nullable=False)
    acquired_at: Mapped[datetime] = mapped_column(UTCDateTime, default=_utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    details: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)

    __table_args__ = (UniqueConstraint("lock_name", name="uq_job_locks_name"),)
