"""Tests for the ordered admission chain."""

from __future__ import annotations

import pytest

from meter_api.errors import DailyLimitReached, EndpointNotAllowed, QuotaExceeded, TooManyFiles
from meter_api.services.admission import AdmissionGate
from meter_api.services.key_resolver import ResolvedCaller, Tier
from meter_api.services.public_limiter import PublicDailyLimiter


@pytest.fixture
def gate(settings, ledger) -> AdmissionGate:
    return AdmissionGate(settings, ledger, PublicDailyLimiter({"h2i": 2}))


async def _customer(lifecycle, resolver, session_factory, plan_slug: str) -> ResolvedCaller:
    result = await lifecycle.provision_or_activate(subscription_id="sub_1", plan_slug=plan_slug)
    async with session_factory() as session:
        return await resolver.resolve(session, result.plaintext)


@pytest.mark.asyncio
async def test_owner_always_admitted(gate) -> None:
    admission = await gate.admit(ResolvedCaller(tier=Tier.OWNER), "h2i", requested_files=40)
    assert admission.limits.allowed
    assert admission.quota.remaining is None
    assert admission.public_remaining is None


@pytest.mark.asyncio
async def test_public_daily_limit(gate) -> None:
    caller = ResolvedCaller(tier=Tier.PUBLIC)
    assert (await gate.admit(caller, "h2i", ip="192.0.2.5")).public_remaining == 1
    assert (await gate.admit(caller, "h2i", ip="192.0.2.5")).public_remaining == 0
    with pytest.raises(DailyLimitReached):
        await gate.admit(caller, "h2i", ip="192.0.2.5")


@pytest.mark.asyncio
async def test_closed_endpoint_rejected_before_quota(gate, lifecycle, resolver, session_factory, ledger, plans) -> None:
    caller = await _customer(lifecycle, resolver, session_factory, "pro")
    with pytest.raises(EndpointNotAllowed):
        await gate.admit(caller, "pdf")

    admission = await gate.admit(caller, "image", requested_files=3)
    assert admission.limits.timeout_seconds == 600
    assert admission.limits.upload.max_total_bytes == 100 * 1024 * 1024


@pytest.mark.asyncio
async def test_customer_quota_enforced(gate, lifecycle, resolver, session_factory, ledger, plans) -> None:
    caller = await _customer(lifecycle, resolver, session_factory, "starter")
    admission = await gate.admit(caller, "image", requested_files=5)
    assert admission.quota.remaining == 5
    assert admission.requested_files == 5
    assert admission.period == ledger.period_for(caller)

    await ledger.record_and_log(caller, endpoint="image", files_processed=5)
    with pytest.raises(QuotaExceeded):
        await gate.admit(caller, "image")


@pytest.mark.asyncio
async def test_per_request_file_cap(gate, lifecycle, resolver, session_factory, plans, settings) -> None:
    caller = await _customer(lifecycle, resolver, session_factory, "starter")
    with pytest.raises(TooManyFiles) as excinfo:
        await gate.admit(caller, "image", requested_files=50)
    assert excinfo.value.status_code == 413
    assert excinfo.value.details == {"limit": 5, "requested": 50}

    with pytest.raises(TooManyFiles):
        too_many = settings.owner_max_files_per_request + 1
        await gate.admit(ResolvedCaller(tier=Tier.OWNER), "pdf", requested_files=too_many)
