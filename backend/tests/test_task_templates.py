# tests/test_task_templates.py - Task templates, requirement linkage and the task library
import pytest
from httpx import AsyncClient

from tests.conftest import actor_headers


@pytest.mark.asyncio
async def test_create_template_with_links(client: AsyncClient, pci, auditor):
    doc = await client.post("/api/v1/documents", json={
        "name": "Firewall policy", "documentType": "policy", "sourceUrl": "https://policies/fw",
    }, headers=actor_headers(auditor))
    assert doc.status_code == 201

    resp = await client.post("/api/v1/tasks", json={
        "title": "Review VPN config",
        "category": "Network",
        "highLevelCheckType": "manual",
        "evidenceTypesExpected": ["config export"],
        "requirementIds": [pci["REQ-3"].id],
        "linkedDocumentIds": [doc.json()["id"]],
    }, headers=actor_headers(auditor))
    assert resp.status_code == 201
    data = resp.json()
    assert data["requirement_ids"] == [pci["REQ-3"].id]
    assert data["linked_document_ids"] == [doc.json()["id"]]
    assert data["high_level_check_type"] == "manual"

    requirement = await client.get(f"/api/v1/requirements/{pci['REQ-3'].id}")
    assert requirement.json()["task_template_ids"] == [data["id"]]


@pytest.mark.asyncio
async def test_create_template_validation(client: AsyncClient, pci, auditor):
    bad_type = await client.post("/api/v1/tasks", json={"title": "x", "highLevelCheckType": "telepathy"},
                                 headers=actor_headers(auditor))
    assert bad_type.status_code == 422

    missing_req = await client.post("/api/v1/tasks", json={"title": "x", "requirementIds": ["ghost"]},
                                    headers=actor_headers(auditor))
    assert missing_req.status_code == 404
    assert len((await client.get("/api/v1/tasks")).json()) == 2


@pytest.mark.asyncio
async def test_list_templates_filters(client: AsyncClient, pci):
    all_templates = await client.get("/api/v1/tasks")
    assert [t["title"] for t in all_templates.json()] == ["Check Firewall", "Check Logs"]

    for_req2 = await client.get("/api/v1/tasks", params={"requirementId": pci["REQ-2"].id})
    assert [t["id"] for t in for_req2.json()] == [pci["firewall"].id]

    logging = await client.get("/api/v1/tasks", params={"category": "Logging"})
    assert [t["id"] for t in logging.json()] == [pci["logs"].id]

    by_standard = await client.get("/api/v1/tasks", params={"standardId": pci["standard"].id})
    assert len(by_standard.json()) == 2


@pytest.mark.asyncio
async def test_link_is_idempotent(client: AsyncClient, pci, auditor):
    url = f"/api/v1/tasks/{pci['logs'].id}/link"
    body = {"requirementIds": [pci["REQ-1"].id, pci["REQ-2"].id]}

    first = await client.post(url, json=body, headers=actor_headers(auditor))
    assert first.status_code == 200
    assert first.json()["linked"] == [pci["REQ-2"].id]
    assert first.json()["already_linked"] == [pci["REQ-1"].id]

    again = await client.post(url, json=body, headers=actor_headers(auditor))
    assert again.json()["linked"] == []
    assert again.json()["changed"] is False
    assert sorted(again.json()["requirement_ids"]) == sorted([pci["REQ-1"].id, pci["REQ-2"].id])

    empty = await client.post(url, json={"requirementIds": []}, headers=actor_headers(auditor))
    assert empty.status_code == 422

    ghost = await client.post(url, json={"requirementIds": ["ghost"]}, headers=actor_headers(auditor))
    assert ghost.status_code == 404


@pytest.mark.asyncio
async def test_unlink_reports_not_linked(client: AsyncClient, pci, auditor):
    url = f"/api/v1/tasks/{pci['firewall'].id}/unlink"
    resp = await client.post(url, json={"requirementIds": [pci["REQ-2"].id, pci["REQ-3"].id]},
                             headers=actor_headers(auditor))
    assert resp.status_code == 200
    assert resp.json()["unlinked"] == [pci["REQ-2"].id]
    assert resp.json()["not_linked"] == [pci["REQ-3"].id]
    assert resp.json()["requirement_ids"] == [pci["REQ-1"].id]


@pytest.mark.asyncio
async def test_template_edit_does_not_touch_instances(client: AsyncClient, pci, auditor):
    campaign = await client.post("/api/v1/campaigns", json={
        "standardId": pci["standard"].id, "name": "Snapshot",
        "selectedRequirements": [{"requirementId": pci["REQ-2"].id}],
    }, headers=actor_headers(auditor))

    resp = await client.put(f"/api/v1/tasks/{pci['firewall'].id}", json={"title": "Check Firewall (2026)"},
                            headers=actor_headers(auditor))
    assert resp.json()["title"] == "Check Firewall (2026)"

    instances = await client.get(f"/api/v1/tasks/{pci['firewall'].id}/instances")
    assert [i["title"] for i in instances.json()] == ["Check Firewall"]
    assert instances.json()[0]["campaign_id"] == campaign.json()["id"]

    blocked = await client.delete(f"/api/v1/tasks/{pci['firewall'].id}", headers=actor_headers(auditor))
    assert blocked.status_code == 409

    deleted = await client.delete(f"/api/v1/tasks/{pci['logs'].id}", headers=actor_headers(auditor))
    assert deleted.status_code == 200
    requirement = await client.get(f"/api/v1/requirements/{pci['REQ-1'].id}")
    assert requirement.json()["task_template_ids"] == [pci["firewall"].id]


@pytest.mark.asyncio
async def test_task_library_groups_by_category(client: AsyncClient, pci, auditor):
    await client.post("/api/v1/tasks", json={"title": "Interview CISO"}, headers=actor_headers(auditor))

    resp = await client.get("/api/v1/tasks/library")
    assert resp.status_code == 200
    groups = resp.json()["groups"]
    assert [g["category"] for g in groups] == ["Logging", "Network", "Uncategorized"]
    assert resp.json()["total"] == 3

    firewall = groups[1]["tasks"][0]
    assert firewall["standard_ids"] == [pci["standard"].id]

    scoped = await client.get("/api/v1/tasks/library", params={"standardId": pci["standard"].id})
    assert scoped.json()["total"] == 2
