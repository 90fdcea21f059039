"""Caller-facing account endpoints.

Lets any authenticated caller see what the gate will allow: their tier,
the limits per endpoint and, for customer keys, the current period usage.
The processing services behind the gate use two routes per endpoint:

* ``POST /v1/{endpoint}/admit`` runs the full admission chain and, for
  customer keys, charges the admitted files once the request succeeds.
* ``POST /v1/{endpoint}/record`` reports work the gate did not admit
  itself, such as a job billed on completion or a failure to count.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from meter_core.state.repository import ENDPOINTS
from pydantic import BaseModel, Field

from meter_api.dependencies import CallerDep, LedgerDep, SettingsDep, require_admission
from meter_api.services.admission import Admission
from meter_api.services.request_limits import RequestLimits, resolve_request_limits

router = APIRouter(prefix="/v1", tags=["account"])


def _limits_payload(limits: RequestLimits) -> dict[str, Any]:
    return {
        "allowed": limits.allowed,
        "timeout_seconds": limits.timeout_seconds,
        "max_files": limits.upload.max_files,
        "max_total_bytes": limits.upload.max_total_bytes,
        "max_dimension_px": limits.upload.max_dimension_px,
    }


@router.get("/account")
async def account(caller: CallerDep, settings: SettingsDep, ledger: LedgerDep) -> dict[str, Any]:
    endpoints = {
        endpoint: _limits_payload(resolve_request_limits(caller.tier, caller.plan, endpoint, settings))
        for endpoint in ENDPOINTS
    }
    response: dict[str, Any] = {"status": "ok", "tier": caller.tier.value, "endpoints": endpoints}

    if caller.key is not None:
        plan = caller.plan
        period = ledger.period_for(caller)
        response["key"] = {
            "key_prefix": caller.key.key_prefix,
            "key_last4": caller.key.key_last4,
            "plan_slug": plan.plan_slug if plan is not None else None,
            "valid_until": caller.key.valid_until.isoformat() if caller.key.valid_until else None,
        }
        response["usage"] = await ledger.usage_summary(
            caller.key.id,
            period,
            plan.monthly_quota_files if plan is not None else None,
        )
    return response


def _admit_route(endpoint: str) -> Any:
    async def admit(admission: Admission = Depends(require_admission(endpoint))) -> dict[str, Any]:
        return {
            "status": "ok",
            "tier": admission.caller.tier.value,
            "endpoint": endpoint,
            "limits": _limits_payload(admission.limits),
            "quota_remaining": admission.quota.remaining,
            "period": admission.period,
            "public_remaining": admission.public_remaining,
        }

    admit.__name__ = f"admit_{endpoint}"
    return admit




class RecordRequest(BaseModel):
    """Outcome of one request handled by a processing service."""

    files: int = Field(default=0, ge=0)
    bytes_in: int = Field(default=0, ge=0)
    bytes_out: int = Field(default=0, ge=0)
    status: str = Field(default="success", min_length=1, max_length=32)
    error_code: str | None = Field(default=None, max_length=64)
    error_message: str | None = Field(default=None, max_length=1024)
    action: str | None = Field(default=None, max_length=64)
    params: dict[str, Any] | None = None
    # Period returned by /admit, so the charge lands in the checked bucket.
    period: str | None = Field(default=None, max_length=64)


def _record_route(endpoint: str) -> Any:
    async def record(body: RecordRequest, request: Request, caller: CallerDep, ledger: LedgerDep) -> dict[str, Any]:
        recorded = await ledger.record_and_log(
            caller,
            endpoint=endpoint,
            action=body.action,
            status=body.status,
            files_processed=body.files,
            bytes_in=body.bytes_in,
            bytes_out=body.bytes_out,
            error_code=body.error_code,
            error_message=body.error_message,
            params=body.params,
            ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            period=body.period,
        )
        return {"status": "ok", "tier": caller.tier.value, "endpoint": endpoint, "recorded": recorded}

    record.__name__ = f"record_{endpoint}"
    return record


for _endpoint in ENDPOINTS:
    router.add_api_route(f"/{_endpoint}/admit", _admit_route(_endpoint), methods=["POST"])
    router.add_api_route(f"/{_endpoint}/record", _record_route(_endpoint), methods=["POST"])
