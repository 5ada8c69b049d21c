# tests/test_standards.py - Standards and requirements router tests
import pytest
from httpx import AsyncClient

from tests.conftest import actor_headers


@pytest.mark.asyncio
async def test_standard_crud(client: AsyncClient, auditor):
    resp = await client.post("/api/v1/standards", json={
        "name": "ISO/IEC 27001", "shortName": "ISO27001", "version": "2022", "issuingBody": "ISO",
    }, headers=actor_headers(auditor))
    assert resp.status_code == 201
    standard = resp.json()
    assert standard["short_name"] == "ISO27001"
    assert standard["is_retired"] is False

    resp = await client.put(f"/api/v1/standards/{standard['id']}", json={"jurisdiction": "Global"},
                            headers=actor_headers(auditor))
    assert resp.json()["jurisdiction"] == "Global"
    assert resp.json()["version"] == "2022"

    resp = await client.get(f"/api/v1/standards/{standard['id']}")
    assert resp.json()["name"] == "ISO/IEC 27001"

    resp = await client.delete(f"/api/v1/standards/{standard['id']}", headers=actor_headers(auditor))
    assert resp.status_code == 200
    assert (await client.get(f"/api/v1/standards/{standard['id']}")).status_code == 404


@pytest.mark.asyncio
async def test_standard_requires_name(client: AsyncClient):
    resp = await client.post("/api/v1/standards", json={"shortName": "X"})
    assert resp.status_code == 422
    assert resp.json()["code"] == "CE-STORE-003"


@pytest.mark.asyncio
async def test_retire_instead_of_delete(client: AsyncClient, pci, auditor):
    standard_id = pci["standard"].id
    resp = await client.delete(f"/api/v1/standards/{standard_id}", headers=actor_headers(auditor))
    assert resp.status_code == 409
    assert resp.json()["code"] == "CE-STORE-002"

    resp = await client.post(f"/api/v1/standards/{standard_id}/retire", headers=actor_headers(auditor))
    assert resp.json()["is_retired"] is True

    active_only = await client.get("/api/v1/standards", params={"includeRetired": "false"})
    assert active_only.json() == []
    assert len((await client.get("/api/v1/standards")).json()) == 1

    resp = await client.post("/api/v1/requirements", json={
        "standardId": standard_id, "controlIdReference": "REQ-9", "requirementText": "Late addition",
    }, headers=actor_headers(auditor))
    assert resp.status_code == 409
    assert resp.json()["code"] == "CE-STORE-004"


@pytest.mark.asyncio
async def test_requirement_crud_and_listing(client: AsyncClient, pci, auditor):
    resp = await client.post("/api/v1/requirements", json={
        "standardId": pci["standard"].id,
        "controlIdReference": "REQ-4",
        "requirementText": "Encrypt transmission of cardholder data",
        "tags": ["crypto"],
    }, headers=actor_headers(auditor))
    assert resp.status_code == 201
    requirement = resp.json()
    assert requirement["status"] == "active"
    assert requirement["task_template_ids"] == []

    listed = await client.get("/api/v1/requirements", params={"standardId": pci["standard"].id})
    assert [r["control_id_reference"] for r in listed.json()] == ["REQ-1", "REQ-2", "REQ-3", "REQ-4"]

    resp = await client.put(f"/api/v1/requirements/{requirement['id']}", json={"status": "deprecated"},
                            headers=actor_headers(auditor))
    assert resp.json()["status"] == "deprecated"
    deprecated = await client.get("/api/v1/requirements", params={"status": "deprecated"})
    assert [r["id"] for r in deprecated.json()] == [requirement["id"]]

    bad = await client.get("/api/v1/requirements", params={"status": "obsolete"})
    assert bad.status_code == 422

    resp = await client.delete(f"/api/v1/requirements/{requirement['id']}", headers=actor_headers(auditor))
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_requirement_shows_linked_templates(client: AsyncClient, pci):
    resp = await client.get(f"/api/v1/requirements/{pci['REQ-1'].id}")
    assert sorted(resp.json()["task_template_ids"]) == sorted([pci["firewall"].id, pci["logs"].id])


@pytest.mark.asyncio
async def test_requirement_for_unknown_standard(client: AsyncClient, auditor):
    resp = await client.post("/api/v1/requirements", json={
        "standardId": "nope", "controlIdReference": "X-1", "requirementText": "Orphan",
    }, headers=actor_headers(auditor))
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_requirement_in_campaign_cannot_be_deleted(client: AsyncClient, pci, auditor):
    await client.post("/api/v1/campaigns", json={
        "standardId": pci["standard"].id, "name": "Guard",
        "selectedRequirements": [{"requirementId": pci["REQ-1"].id}],
    }, headers=actor_headers(auditor))
    resp = await client.delete(f"/api/v1/requirements/{pci['REQ-1'].id}", headers=actor_headers(auditor))
    assert resp.status_code == 409
    assert resp.json()["details"]["task_instances"] == 2
