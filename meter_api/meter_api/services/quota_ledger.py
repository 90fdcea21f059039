"""Per-period quota accounting and the request audit trail.

Quota is a file-count budget per usage period (see
:mod:`meter_core.usage.period`).  The request path is:

1. :meth:`QuotaLedger.enforce` before doing expensive work: reads or
   lazily creates the period row and raises
   :class:`~meter_api.errors.QuotaExceeded` when the request would not fit.
2. :meth:`QuotaLedger.record_and_log` after the request, success or
   failure: bumps the counters and appends one ``request_log`` row.

Recording is best-effort.  A failure is logged and swallowed so that an
otherwise successful response is never turned into an error by the audit
trail.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from typing import Any

from meter_core.state.repository import ENDPOINTS, ApiKeyRepository, UsageRepository
from meter_core.state.schema_guard import SchemaGuard, default_guard
from meter_core.state.tables import UsagePeriodTable
from meter_core.usage.period import usage_period
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from meter_api.errors import QuotaExceeded, default_message
from meter_api.services.key_resolver import ResolvedCaller, Tier

logger = logging.getLogger(__name__)

SECRET_PARAM_NAMES: frozenset[str] = frozenset({"api_key", "key", "license_key", "token", "bridge_token"})
PARAMS_JSON_MAX_CHARS = 2000


@dataclass(frozen=True)
class UsageSnapshot:
    """Counters of one usage row at read time."""

    api_key_id: str
    period: str
    used_files: int = 0
    used_bytes: int = 0

    @classmethod
    def from_row(cls, row: UsagePeriodTable) -> UsageSnapshot:
        return cls(
            api_key_id=row.api_key_id,
            period=row.period,
            used_files=row.used_files or 0,
            used_bytes=row.used_bytes or 0,
        )


@dataclass(frozen=True)
class QuotaDecision:
    allowed: bool
    remaining: int | None
    limit: int | None = None
    period: str | None = None


def check_quota(snapshot: UsageSnapshot, limit: Any, requested: int) -> QuotaDecision:
    """Decide whether *requested* files fit into *limit*.

    A missing, non-numeric or zero limit means unlimited.
    """
    if isinstance(limit, bool) or not isinstance(limit, int | float) or not limit:
        return QuotaDecision(allowed=True, remaining=None, limit=None)
    limit = int(limit)
    remaining = limit - snapshot.used_files
    return QuotaDecision(allowed=remaining >= requested, remaining=remaining, limit=limit)


def sanitize_params(params: dict[str, Any] | None) -> dict[str, Any] | None:
    """Drop secret-looking keys from a parameter snapshot (recursively)."""
    if params is None:
        return None
    clean: dict[str, Any] = {}
    for name, value in params.items():
        if str(name).lower() in SECRET_PARAM_NAMES:
            continue
        if isinstance(value, dict):
            value = sanitize_params(value)
        clean[name] = value
    return clean


def serialize_params(params: dict[str, Any] | None) -> str | None:
    clean = sanitize_params(params)
    if not clean:
        return None
    return json.dumps(clean, default=str, ensure_ascii=False)[:PARAMS_JSON_MAX_CHARS]


class QuotaLedger:
    """Read, check and record usage for customer keys.

    Parameters
    ----------
    session_factory:
        Factory for the sessions each operation opens.
    schema_guard:
        Guard used to insert audit rows.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        schema_guard: SchemaGuard | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._guard = schema_guard or default_guard

    async def get_or_create(self, api_key_id: str, period: str) -> UsageSnapshot:
        """Return the usage row for ``(api_key_id, period)``, creating it lazily.

        A freshly inserted row is returned as known zeroes without a second
        read.  If a concurrent request wins the insert race the unique
        constraint rejects ours and the winner's row is re-read.
        """
        async with self._session_factory() as session, session.begin():
            repo = UsageRepository(session)
            row = await repo.get(api_key_id, period)
            if row is not None:
                return UsageSnapshot.from_row(row)
            created = await repo.insert_zeroed(api_key_id, period)
            if created is not None:
                return UsageSnapshot(api_key_id=api_key_id, period=period)
            row = await repo.get(api_key_id, period)
            if row is None:
                raise RuntimeError(f"Usage row for key={api_key_id} period={period} vanished after conflict")
            return UsageSnapshot.from_row(row)

    def period_for(self, caller: ResolvedCaller, now: datetime | None = None) -> str:
        return usage_period(caller.key, caller.plan, now)

    async def enforce(self, caller: ResolvedCaller, requested: int) -> QuotaDecision:
        """Check quota for a customer caller; non-customers are unlimited.

        The returned decision carries the period the check was made against;
        pass it on to :meth:`record_and_log` so the charge lands in the same
        bucket even when the request straddles a period boundary.

        Raises
        ------
        QuotaExceeded
            The request needs more files than remain in the period.
        """
        if not caller.is_customer or caller.key is None:
            return QuotaDecision(allowed=True, remaining=None)
        period = self.period_for(caller)
        snapshot = await self.get_or_create(caller.key.id, period)
        limit = caller.plan.monthly_quota_files if caller.plan is not None else None
        decision = replace(check_quota(snapshot, limit, requested), period=period)
        if not decision.allowed:
            logger.info(
                "Quota exceeded key=%s period=%s used=%d limit=%s requested=%d",
                caller.key.id,
                period,
                snapshot.used_files,
                decision.limit,
                requested,
            )
            raise QuotaExceeded(
                limit=decision.limit or 0,
                used=snapshot.used_files,
                remaining=decision.remaining or 0,
                requested=requested,
            )
        return decision

    async def record_and_log(
        self,
        caller: ResolvedCaller,
        *,
        endpoint: str,
        action: str | None = None,
        status: str = "success",
        files_processed: int = 0,
        bytes_in: int = 0,
        bytes_out: int = 0,
        error_code: str | None = None,
        error_message: str | None = None,
        params: dict[str, Any] | None = None,
        ip: str | None = None,
        user_agent: str | None = None,
        period: str | None = None,
    ) -> bool:
        """Record one completed request.  Returns ``True`` if anything was written.

        No-op for owner/public callers and for keys that were disabled while
        the request was running.  *period* defaults to the current one.
        Never raises.
        """
        if caller.tier is not Tier.CUSTOMER or caller.key is None:
            return False

        key_id = caller.key.id
        period = period or self.period_for(caller)
        failed = status != "success" or bool(error_code)
        if error_code and not error_message:
            error_message = default_message(error_code)
        files = max(int(files_processed or 0), 0)

        try:
            async with self._session_factory() as session, session.begin():
                if not await ApiKeyRepository(session).is_active(key_id):
                    logger.info("Skipping usage record for inactive key=%s", key_id)
                    return False

                usage = UsageRepository(session)
                if await usage.get(key_id, period) is None:
                    await usage.insert_zeroed(key_id, period)
                await usage.increment(
                    key_id,
                    period,
                    endpoint=endpoint if endpoint in ENDPOINTS else None,
                    files=files,
                    bytes_in=int(bytes_in or 0),
                    bytes_out=int(bytes_out or 0),
                    failed=failed,
                    error_code=error_code,
                    error_message=error_message,
                )

                now = datetime.now(UTC)
                await self._guard.insert_request_log_row(
                    session,
                    {
                        "api_key_id": key_id,
                        "timestamp": now,
                        "created_at": now,
                        "endpoint": endpoint,
                        "action": action,
                        "status": status,
                        "ip": ip,
                        "user_agent": user_agent[:512] if user_agent else None,
                        "bytes_in": int(bytes_in or 0),
                        "bytes_out": int(bytes_out or 0),
                        "files_processed": files,
                        "error_code": error_code,
                        "error_message": error_message,
                        "params_json": serialize_params(params),
                    },
                )
        except Exception:
            logger.error(
                "Failed to record usage/log for key=%s endpoint=%s",
                key_id,
                endpoint,
                exc_info=True,
            )
            return False
        return True

    async def usage_summary(
        self,
        api_key_id: str,
        period: str,
        monthly_quota_files: int | None = None,
    ) -> dict[str, Any]:
        """Build the usage report payload for one key and period."""
        async with self._session_factory() as session:
            row = await UsageRepository(session).get(api_key_id, period)

        def _val(name: str) -> int:
            return int(getattr(row, name) or 0) if row is not None else 0

        used = _val("used_files")
        remaining = None
        if monthly_quota_files:
            remaining = max(monthly_quota_files - used, 0)
        return {
            "period": period,
            "monthly_quota_files": monthly_quota_files,
            "used_files": used,
            "remaining_files": remaining,
            "used_bytes": _val("used_bytes"),
            "total_calls": _val("total_calls"),
            "total_files_processed": _val("total_files_processed"),
            "bytes_in": _val("bytes_in"),
            "bytes_out": _val("bytes_out"),
            "errors": _val("errors"),
            "last_error_code": row.last_error_code if row is not None else None,
            "last_activity_at": (
                row.last_activity_at.isoformat() if row is not None and row.last_activity_at else None
            ),
            "per_endpoint": {
                endpoint: {"calls": _val(f"{endpoint}_calls"), "files": _val(f"{endpoint}_files")}
                for endpoint in ENDPOINTS
            },
        }
