"""Per-request policy derived from the caller's tier and plan.

Precedence per field:

* **public** -- public defaults from settings.
* **owner**  -- owner defaults (generous file cap, no byte/dimension cap).
* **customer** -- the plan's value, falling back to the public default
  when the plan leaves it unset.

Endpoint allowance only applies to customers: a plan flag of ``None``
means allowed, ``False`` means the endpoint is closed for that plan.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from meter_api.config import APISettings
from meter_api.errors import EndpointNotAllowed
from meter_api.services.key_resolver import Tier

MB = 1024 * 1024

# Endpoints without pixel dimensions.
_NO_DIMENSION_ENDPOINTS = frozenset({"pdf", "h2i"})


@dataclass(frozen=True)
class UploadLimits:
    max_files: int | None
    max_total_bytes: int | None
    max_dimension_px: int | None
    per_file_limit_bytes: int


@dataclass(frozen=True)
class RequestLimits:
    timeout_seconds: int
    upload: UploadLimits
    allowed: bool
    plan_slug: str | None = None


def _int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def resolve_timeout(tier: Tier, plan: Any, settings: APISettings) -> int:
    if tier is Tier.PUBLIC:
        return settings.public_timeout_seconds
    if tier is Tier.OWNER:
        return settings.owner_timeout_seconds
    plan_timeout = _int_or_none(getattr(plan, "timeout_seconds", None))
    if plan_timeout is not None:
        return plan_timeout
    return settings.customer_default_timeout_seconds


def resolve_endpoint_allowance(tier: Tier, plan: Any, endpoint: str) -> bool:
    if tier is not Tier.CUSTOMER or plan is None:
        return True
    flag = getattr(plan, f"allow_{endpoint}", None)
    if flag is None:
        return True
    return bool(flag)


def _public_upload(endpoint: str, settings: APISettings) -> tuple[int | None, int | None, int | None]:
    dimension = None if endpoint in _NO_DIMENSION_ENDPOINTS else settings.public_max_dimension_px
    return settings.public_max_files_per_request, settings.public_max_total_upload_mb, dimension


def resolve_upload_limits(tier: Tier, plan: Any, endpoint: str, settings: APISettings) -> UploadLimits:
    public_files, public_mb, public_dim = _public_upload(endpoint, settings)

    if tier is Tier.CUSTOMER:
        plan_files = _int_or_none(getattr(plan, "max_files_per_request", None))
        plan_mb = _int_or_none(getattr(plan, "max_total_upload_mb", None))
        plan_dim = _int_or_none(getattr(plan, "max_dimension_px", None))
        max_files = plan_files if plan_files is not None else public_files
        max_mb = plan_mb if plan_mb is not None else public_mb
        max_dim = plan_dim if plan_dim is not None else public_dim
    elif tier is Tier.PUBLIC:
        max_files, max_mb, max_dim = public_files, public_mb, public_dim
    else:
        max_files, max_mb, max_dim = settings.owner_max_files_per_request, None, None

    return UploadLimits(
        max_files=max_files,
        max_total_bytes=max_mb * MB if max_mb else None,
        max_dimension_px=max_dim,
        per_file_limit_bytes=settings.max_upload_bytes_per_file,
    )


def resolve_request_limits(tier: Tier, plan: Any, endpoint: str, settings: APISettings) -> RequestLimits:
    """Combine timeout, upload caps and endpoint allowance for one request."""
    return RequestLimits(
        timeout_seconds=resolve_timeout(tier, plan, settings),
        upload=resolve_upload_limits(tier, plan, endpoint, settings),
        allowed=resolve_endpoint_allowance(tier, plan, endpoint),
        plan_slug=getattr(plan, "plan_slug", None),
    )


def ensure_endpoint_allowed(limits: RequestLimits, endpoint: str) -> None:
    """Raise :class:`EndpointNotAllowed` when the plan closes *endpoint*."""
    if not limits.allowed:
        raise EndpointNotAllowed(details={"endpoint": endpoint, "plan_slug": limits.plan_slug})
