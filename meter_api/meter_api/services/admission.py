"""Admission of a request to a metered endpoint.

Runs the checks of the gate in order, after the caller has been resolved:

1. request limits for the tier and plan (endpoint closed -> 403, more
   files than one request may carry -> 413);
2. the per-IP daily limit for public callers;
3. the period quota for customer callers.

Owners pass every check except the per-request file cap.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from meter_api.config import APISettings
from meter_api.errors import TooManyFiles
from meter_api.services.key_resolver import ResolvedCaller, Tier
from meter_api.services.public_limiter import PublicDailyLimiter
from meter_api.services.quota_ledger import QuotaDecision, QuotaLedger
from meter_api.services.request_limits import RequestLimits, ensure_endpoint_allowed, resolve_request_limits

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Admission:
    """An admitted request.

    ``quota.period`` is the usage bucket the quota was checked against; the
    usage recorded for this request is charged to the same bucket.
    """

    caller: ResolvedCaller
    endpoint: str
    limits: RequestLimits
    quota: QuotaDecision
    requested_files: int = 1
    public_remaining: int | None = None

    @property
    def period(self) -> str | None:
        return self.quota.period


def ensure_file_count_allowed(limits: RequestLimits, requested_files: int) -> None:
    cap = limits.upload.max_files
    if cap is not None and requested_files > cap:
        raise TooManyFiles(limit=cap, requested=requested_files)


class AdmissionGate:
    def __init__(self, settings: APISettings, ledger: QuotaLedger, limiter: PublicDailyLimiter) -> None:
        self._settings = settings
        self._ledger = ledger
        self._limiter = limiter

    async def admit(
        self,
        caller: ResolvedCaller,
        endpoint: str,
        *,
        requested_files: int = 1,
        ip: str | None = None,
    ) -> Admission:
        """Admit one request or raise the matching :class:`~meter_api.errors.GateError`."""
        limits = resolve_request_limits(caller.tier, caller.plan, endpoint, self._settings)
        ensure_endpoint_allowed(limits, endpoint)
        ensure_file_count_allowed(limits, requested_files)

        public_remaining = None
        if caller.tier is Tier.PUBLIC:
            public_remaining = await self._limiter.hit(ip or "unknown", endpoint)

        quota = await self._ledger.enforce(caller, requested_files)
        logger.debug(
            "Admitted tier=%s endpoint=%s files=%d remaining=%s",
            caller.tier.value,
            endpoint,
            requested_files,
            quota.remaining,
        )
        return Admission(
            caller=caller,
            endpoint=endpoint,
            limits=limits,
            quota=quota,
            requested_files=requested_files,
            public_remaining=public_remaining,
        )
