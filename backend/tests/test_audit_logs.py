# tests/test_audit_logs.py - Audit trail, health and error envelope tests
import pytest
from httpx import AsyncClient

import campaign_engine
from errors import TransientError
from tests.conftest import actor_headers


@pytest.mark.asyncio
async def test_campaign_creation_is_audited(client: AsyncClient, pci, auditor):
    resp = await client.post("/api/v1/campaigns", json={
        "standardId": pci["standard"].id, "name": "Audited",
        "selectedRequirements": [{"requirementId": pci["REQ-1"].id}],
    }, headers={**actor_headers(auditor), "X-Request-ID": "req-audit-1"})
    campaign_id = resp.json()["id"]

    logs = await client.get("/api/v1/audit-logs", params={"entityType": "campaign", "entityId": campaign_id})
    data = logs.json()
    assert {entry["action"] for entry in data["logs"]} == {"create", "instantiate"}
    assert all(entry["user_id"] == auditor.id for entry in data["logs"])
    assert all(entry["request_id"] == "req-audit-1" for entry in data["logs"])


@pytest.mark.asyncio
async def test_audit_log_filters_and_paging(client: AsyncClient, pci, auditor, engineer):
    for name in ("A", "B", "C"):
        await client.post("/api/v1/standards", json={"name": name}, headers=actor_headers(engineer))

    by_user = await client.get("/api/v1/audit-logs", params={"userId": engineer.id, "limit": 2})
    assert by_user.json()["total"] == 3
    assert by_user.json()["count"] == 2

    creates = await client.get("/api/v1/audit-logs", params={"action": "create", "entityType": "standard"})
    assert creates.json()["total"] == 3

    bad = await client.get("/api/v1/audit-logs", params={"action": "teleport"})
    assert bad.status_code == 422


@pytest.mark.asyncio
async def test_failed_operation_leaves_no_audit_row(client: AsyncClient, pci, auditor):
    await client.post("/api/v1/campaigns", json={
        "standardId": pci["standard"].id, "name": "Broken",
        "selectedRequirements": [{"requirementId": "missing"}],
    }, headers=actor_headers(auditor))
    logs = await client.get("/api/v1/audit-logs", params={"entityType": "campaign"})
    assert logs.json()["total"] == 0


@pytest.mark.asyncio
async def test_transient_error_maps_to_503(client: AsyncClient, monkeypatch):
    async def unavailable(db, campaign_id):
        raise TransientError("storage call timed out", code="CE-SYS-001")

    monkeypatch.setattr(campaign_engine, "get_campaign", unavailable)
    resp = await client.get("/api/v1/campaigns/any")
    assert resp.status_code == 503
    assert resp.headers["Retry-After"] == "1"
    assert resp.json()["code"] == "CE-SYS-001"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    resp = await client.get("/api/v1/campaigns/missing", headers={"X-Request-ID": "rid-42"})
    assert resp.status_code == 404
    assert resp.headers["X-Request-ID"] == "rid-42"
    assert resp.json()["request_id"] == "rid-42"


@pytest.mark.asyncio
async def test_health_and_root(client: AsyncClient):
    resp = await client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["version"] == "1.0.0"

    resp = await client.get("/")
    assert resp.json()["name"] == "Compliance Engine"
    assert resp.headers["X-Content-Type-Options"] == "nosniff"
