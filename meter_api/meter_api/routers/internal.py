"""Internal administration endpoints.

Called by the billing integration and by operators, never by API
customers.  Every route requires the ``X-Internal-Token`` shared secret.
Plaintext keys appear in a response only when a new secret was issued.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from meter_core.state.repository import ApiKeyRepository, PlanRepository, RequestLogRepository
from meter_core.state.schema_guard import default_guard
from meter_core.state.tables import ApiKeyTable, RequestLogTable
from meter_core.usage.period import usage_period
from pydantic import BaseModel, Field

from meter_api.dependencies import LedgerDep, LifecycleDep, SessionDep, SettingsDep, require_internal_token
from meter_api.errors import KeyNotFound, MissingIdentifier
from meter_api.services.key_lifecycle import SubscriptionEvent, parse_datetime_input

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/internal",
    tags=["internal"],
    dependencies=[Depends(require_internal_token)],
)


# ---------------------------------------------------------------------------
# Request schemas
# ---------------------------------------------------------------------------


class IdentityRequest(BaseModel):
    """Selects a customer's keys by subscription id and/or email."""

    subscription_id: str | None = Field(default=None, max_length=128)
    email: str | None = Field(default=None, max_length=320)


class ProvisionRequest(IdentityRequest):
    """Request body for ``POST /internal/keys/provision``."""

    name: str | None = Field(default=None, max_length=256)
    plan_id: int | None = None
    plan_slug: str | None = Field(default=None, max_length=64)
    order_id: str | None = Field(default=None, max_length=128)
    subscription_status: str | None = Field(default=None, max_length=64)
    # ISO-8601 strings; validated by the lifecycle so errors carry the
    # gate's error envelope.
    valid_from: str | None = None
    valid_until: str | None = None


class SubscriptionEventRequest(ProvisionRequest):
    """Request body for ``POST /internal/subscription/event``."""

    event: str = Field(..., min_length=1, max_length=64)
    is_lifetime: bool = False


class DisableRequest(IdentityRequest):
    reason: str | None = Field(default=None, max_length=32)


class ToggleRequest(IdentityRequest):
    enabled: bool


class PurgeRequest(IdentityRequest):
    reason: str | None = Field(default=None, max_length=128)


class LogsRequest(IdentityRequest):
    """Request body for ``POST /internal/keys/logs``."""

    page: int = Field(default=1, ge=1)
    per_page: int = Field(default=20, ge=1, le=100)
    endpoint: str | None = Field(default=None, max_length=32)
    status: str | None = Field(default=None, max_length=32, description="ok, error or a stored status.")
    since: str | None = None
    until: str | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _iso(value: Any) -> str | None:
    return value.isoformat() if value is not None else None


def _key_payload(record: ApiKeyTable, plaintext: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": record.id,
        "key_prefix": record.key_prefix,
        "key_last4": record.key_last4,
        "status": record.status,
        "disabled_reason": record.disabled_reason,
        "plan_slug": record.plan.plan_slug if record.plan is not None else None,
        "customer_email": record.customer_email,
        "subscription_id": record.subscription_id,
        "subscription_status": record.subscription_status,
        "valid_from": _iso(record.valid_from),
        "valid_until": _iso(record.valid_until),
        "rotated_at": _iso(record.rotated_at),
    }
    if plaintext:
        payload["api_key"] = plaintext
    return payload


def _log_payload(row: RequestLogTable) -> dict[str, Any]:
    return {
        "timestamp": _iso(row.timestamp),
        "endpoint": row.endpoint,
        "action": row.action,
        "status": row.status,
        "error_code": row.error_code,
        "error_message": row.error_message,
        "files_processed": row.files_processed or 0,
        "bytes_in": row.bytes_in or 0,
        "bytes_out": row.bytes_out or 0,
    }


def _identity(subscription_id: str | None, email: str | None) -> tuple[str | None, str | None]:
    subscription_id = (subscription_id or "").strip() or None
    email = (email or "").strip().lower() or None
    if subscription_id is None and email is None:
        raise MissingIdentifier()
    return subscription_id, email


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/subscription/event")
async def subscription_event(body: SubscriptionEventRequest, lifecycle: LifecycleDep) -> dict[str, Any]:
    """Apply a billing-system event (activation or cancellation)."""
    event = SubscriptionEvent(
        event=body.event,
        email=body.email,
        name=body.name,
        plan_id=body.plan_id,
        plan_slug=body.plan_slug,
        subscription_id=body.subscription_id,
        order_id=body.order_id,
        subscription_status=body.subscription_status,
        valid_from=parse_datetime_input(body.valid_from, "valid_from"),
        valid_until=parse_datetime_input(body.valid_until, "valid_until"),
        is_lifetime=body.is_lifetime,
    )
    outcome = await lifecycle.apply_subscription_event(event)
    response: dict[str, Any] = {
        "status": "ok",
        "event": outcome.event,
        "action": outcome.action,
        "affected": outcome.affected,
    }
    if outcome.provision is not None:
        response["key"] = _key_payload(outcome.provision.record, outcome.provision.plaintext)
    return response


@router.post("/keys/provision")
async def provision_key(body: ProvisionRequest, lifecycle: LifecycleDep) -> dict[str, Any]:
    """Create a key for the identity, or reactivate its newest key."""
    result = await lifecycle.provision_or_activate(
        email=body.email,
        name=body.name,
        plan_id=body.plan_id,
        plan_slug=body.plan_slug,
        subscription_id=body.subscription_id,
        order_id=body.order_id,
        subscription_status=body.subscription_status,
        valid_from=parse_datetime_input(body.valid_from, "valid_from"),
        valid_until=parse_datetime_input(body.valid_until, "valid_until"),
    )
    return {"status": "ok", "action": result.action, "key": _key_payload(result.record, result.plaintext)}


@router.post("/keys/disable")
async def disable_keys(body: DisableRequest, lifecycle: LifecycleDep) -> dict[str, Any]:
    affected = await lifecycle.disable(
        subscription_id=body.subscription_id,
        email=body.email,
        reason=body.reason or "manual",
    )
    return {"status": "ok", "action": "disabled", "affected": affected}


@router.post("/keys/rotate")
async def rotate_key(body: IdentityRequest, lifecycle: LifecycleDep) -> dict[str, Any]:
    """Issue a new secret for the identity's newest key; the old one stops working."""
    result = await lifecycle.rotate(subscription_id=body.subscription_id, email=body.email)
    return {"status": "ok", "action": "rotated", "key": _key_payload(result.record, result.plaintext)}


@router.post("/keys/toggle")
async def toggle_key(body: ToggleRequest, lifecycle: LifecycleDep) -> dict[str, Any]:
    record = await lifecycle.set_enabled(
        enabled=body.enabled,
        subscription_id=body.subscription_id,
        email=body.email,
    )
    return {"status": "ok", "action": "enabled" if body.enabled else "disabled", "key": _key_payload(record)}


@router.get("/keys/usage")
async def key_usage(
    session: SessionDep,
    ledger: LedgerDep,
    subscription_id: str | None = Query(default=None, max_length=128),
    email: str | None = Query(default=None, max_length=320),
    period: str | None = Query(default=None, max_length=64, description="Defaults to the current period."),
) -> dict[str, Any]:
    """Return the usage counters of the identity's newest key."""
    subscription_id, email = _identity(subscription_id, email)
    record = await ApiKeyRepository(session).find_for_identity(subscription_id, email)
    if record is None:
        raise KeyNotFound()

    period = period or usage_period(record, record.plan)
    quota = record.plan.monthly_quota_files if record.plan is not None else None
    usage = await ledger.usage_summary(record.id, period, quota)
    return {"status": "ok", "key": _key_payload(record), "usage": usage}


@router.get("/keys")
async def list_keys(
    session: SessionDep,
    search: str | None = Query(default=None, max_length=128),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
) -> dict[str, Any]:
    """Page through all keys, newest first.  Never includes secrets."""
    search = (search or "").strip() or None
    total, records = await ApiKeyRepository(session).list_page(search, page=page, per_page=per_page)
    return {
        "status": "ok",
        "page": page,
        "per_page": per_page,
        "total": total,
        "items": [_key_payload(record) for record in records],
    }


@router.post("/keys/logs")
async def key_logs(body: LogsRequest, session: SessionDep) -> dict[str, Any]:
    """Page through the request log of every key the identity ever had."""
    subscription_id, email = _identity(body.subscription_id, body.email)
    since = parse_datetime_input(body.since, "since")
    until = parse_datetime_input(body.until, "until")

    key_ids = await ApiKeyRepository(session).ids_for_identity(subscription_id, email)
    total, rows = await RequestLogRepository(session).list_page(
        key_ids,
        page=body.page,
        per_page=body.per_page,
        endpoint=body.endpoint,
        status=body.status,
        since=since,
        until=until,
    )
    return {
        "status": "ok",
        "page": body.page,
        "per_page": body.per_page,
        "total": total,
        "items": [_log_payload(row) for row in rows],
    }


@router.post("/keys/purge")
async def purge_keys(body: PurgeRequest, lifecycle: LifecycleDep) -> dict[str, Any]:
    """Hard-delete every key of the identity with its usage rows and request log."""
    deleted = await lifecycle.purge_identity(subscription_id=body.subscription_id, email=body.email)
    logger.warning("Purge requested via internal API (reason=%s)", body.reason)
    return {"status": "ok", "action": "purged", "deleted": deleted, "reason": body.reason}


@router.get("/debug")
async def debug(
    session: SessionDep,
    settings: SettingsDep,
    probe: bool = Query(default=False, description="Insert and delete a request_log row."),
) -> dict[str, Any]:
    """Report database reachability, the plan catalogue and the request_log schema."""
    plans = await PlanRepository(session).list_all()
    columns = await default_guard.get_request_log_columns(session, refresh=True)
    report: dict[str, Any] = {
        "token_configured": bool(settings.internal_token),
        "db_connected": True,
        "plans": [plan.plan_slug for plan in plans],
        "request_log_columns": sorted(columns),
    }
    if probe:
        key_id = await ApiKeyRepository(session).any_id()
        if key_id is None:
            report["request_log_probe"] = {"success": False, "error": "No API key to attach the probe row to."}
        else:
            report["request_log_probe"] = await default_guard.probe_request_log(session, key_id)
    return {"status": "ok", "debug": report}
