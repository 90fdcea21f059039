"""Tests for /health, GET /v1/account and the /v1/{endpoint}/admit routes."""

from __future__ import annotations

import pytest
from httpx import AsyncClient

OWNER_KEY = "owner-key-0123456789"
PUBLIC_KEY = "public-key-0123456789"
INTERNAL_TOKEN = "internal-test-token"

pytestmark = pytest.mark.usefixtures("plans")


async def _customer_key(client: AsyncClient, plan_slug: str, subscription_id: str = "sub_1") -> str:
    resp = await client.post(
        "/internal/keys/provision",
        json={"subscription_id": subscription_id, "plan_slug": plan_slug},
        headers={"X-Internal-Token": INTERNAL_TOKEN},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["key"]["api_key"]


@pytest.mark.asyncio
async def test_health(client: AsyncClient) -> None:
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["db"] == "ok"


# ---------------------------------------------------------------------------
# GET /v1/account
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_account_requires_credential(client: AsyncClient) -> None:
    resp = await client.get("/v1/account")
    assert resp.status_code == 401
    body = resp.json()
    assert body["code"] == "invalid_api_key"
    assert "X-Api-Key" in body["error"]["hint"]


@pytest.mark.asyncio
async def test_account_owner(client: AsyncClient, settings) -> None:
    resp = await client.get("/v1/account", headers={"X-Api-Key": OWNER_KEY})
    body = resp.json()
    assert body["tier"] == "owner"
    assert "key" not in body
    assert body["endpoints"]["pdf"]["max_files"] == settings.owner_max_files_per_request
    assert body["endpoints"]["pdf"]["max_total_bytes"] is None


@pytest.mark.asyncio
async def test_account_public(client: AsyncClient, settings) -> None:
    resp = await client.get("/v1/account", params={"key": PUBLIC_KEY})
    body = resp.json()
    assert body["tier"] == "public"
    assert body["endpoints"]["image"]["timeout_seconds"] == settings.public_timeout_seconds


@pytest.mark.asyncio
async def test_account_customer_reports_usage(client: AsyncClient) -> None:
    api_key = await _customer_key(client, "starter")

    resp = await client.get("/v1/account", headers={"X-Api-Key": api_key})
    assert resp.status_code == 200
    body = resp.json()
    assert body["tier"] == "customer"
    assert body["key"]["plan_slug"] == "starter"
    assert body["key"]["key_last4"] == api_key[-4:]
    assert body["usage"]["monthly_quota_files"] == 5
    assert body["endpoints"]["image"]["max_files"] == 5


# ---------------------------------------------------------------------------
# POST /v1/{endpoint}/admit
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_admit_public_counts_down(client: AsyncClient, settings) -> None:
    limit = settings.public_daily_limits["h2i"]

    for expected in range(limit - 1, -1, -1):
        resp = await client.post("/v1/h2i/admit", headers={"X-Api-Key": PUBLIC_KEY})
        assert resp.status_code == 200
        assert resp.json()["public_remaining"] == expected

    resp = await client.post("/v1/h2i/admit", headers={"X-Api-Key": PUBLIC_KEY})
    assert resp.status_code == 429
    assert resp.json()["code"] == "rate_limit_exceeded"


@pytest.mark.asyncio
async def test_admit_owner_unmetered(client: AsyncClient) -> None:
    resp = await client.post("/v1/pdf/admit", params={"files": 50}, headers={"X-Api-Key": OWNER_KEY})
    body = resp.json()
    assert body["tier"] == "owner"
    assert body["quota_remaining"] is None
    assert body["public_remaining"] is None


@pytest.mark.asyncio
async def test_admit_closed_endpoint(client: AsyncClient) -> None:
    api_key = await _customer_key(client, "pro")
    resp = await client.post("/v1/pdf/admit", headers={"X-Api-Key": api_key})
    assert resp.status_code == 403
    assert resp.json()["code"] == "endpoint_not_allowed"

    resp = await client.post("/v1/image/admit", headers={"X-Api-Key": api_key})
    assert resp.status_code == 200
    assert resp.json()["limits"]["timeout_seconds"] == 600


@pytest.mark.asyncio
async def test_admit_charges_starter_plan_until_exhausted(client: AsyncClient) -> None:
    api_key = await _customer_key(client, "starter")

    for remaining in range(5, 0, -1):
        resp = await client.post("/v1/image/admit", headers={"X-Api-Key": api_key})
        assert resp.status_code == 200
        assert resp.json()["quota_remaining"] == remaining

    resp = await client.post("/v1/image/admit", headers={"X-Api-Key": api_key})
    assert resp.status_code == 429
    body = resp.json()
    assert body["code"] == "monthly_quota_exceeded"
    assert body["error"]["details"] == {"limit": 5, "used": 5, "remaining": 0, "requested": 1}

    usage = (await client.get("/v1/account", headers={"X-Api-Key": api_key})).json()["usage"]
    assert usage["used_files"] == 5
    assert usage["total_calls"] == 5
    assert usage["per_endpoint"]["image"] == {"calls": 5, "files": 5}


@pytest.mark.asyncio
async def test_admit_multi_file_request_must_fit(client: AsyncClient) -> None:
    api_key = await _customer_key(client, "starter")

    resp = await client.post("/v1/image/admit", params={"files": 4}, headers={"X-Api-Key": api_key})
    assert resp.status_code == 200
    assert resp.json()["quota_remaining"] == 5

    resp = await client.post("/v1/image/admit", params={"files": 2}, headers={"X-Api-Key": api_key})
    assert resp.status_code == 429
    assert resp.json()["error"]["details"] == {"limit": 5, "used": 4, "remaining": 1, "requested": 2}


@pytest.mark.asyncio
async def test_admit_rejects_more_files_than_plan_allows(client: AsyncClient) -> None:
    api_key = await _customer_key(client, "starter")

    resp = await client.post("/v1/image/admit", params={"files": 50}, headers={"X-Api-Key": api_key})
    assert resp.status_code == 413
    body = resp.json()
    assert body["code"] == "too_many_files"
    assert body["error"]["details"] == {"limit": 5, "requested": 50}

    usage = (await client.get("/v1/account", headers={"X-Api-Key": api_key})).json()["usage"]
    assert usage["total_calls"] == 0


@pytest.mark.asyncio
async def test_admit_reads_form_credential(client: AsyncClient) -> None:
    api_key = await _customer_key(client, "starter")
    resp = await client.post("/v1/tools/admit", data={"api_key": api_key})
    assert resp.status_code == 200
    assert resp.json()["tier"] == "customer"


@pytest.mark.asyncio
async def test_admit_bad_files_param_counts_one(client: AsyncClient) -> None:
    resp = await client.post("/v1/image/admit", params={"files": "many"}, headers={"X-Api-Key": OWNER_KEY})
    assert resp.status_code == 200
