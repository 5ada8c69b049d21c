# tests/test_task_instances.py - Task instance router tests
import pytest
from httpx import AsyncClient

from tests.conftest import actor_headers


async def _campaign_instances(client, pci, auditor, selections=(("REQ-1", True),)):
    resp = await client.post("/api/v1/campaigns", json={
        "standardId": pci["standard"].id,
        "name": "Instance campaign",
        "endDate": "2026-12-31",
        "selectedRequirements": [{"requirementId": pci[r].id, "isApplicable": a} for r, a in selections],
    }, headers=actor_headers(auditor))
    assert resp.status_code == 201, resp.text
    campaign = resp.json()
    listed = await client.get(f"/api/v1/campaigns/{campaign['id']}/task-instances")
    return campaign, listed.json()["items"]


@pytest.mark.asyncio
async def test_get_instance_detail(client: AsyncClient, pci, auditor):
    campaign, items = await _campaign_instances(client, pci, auditor)
    resp = await client.get(f"/api/v1/task-instances/{items[0]['id']}")
    assert resp.status_code == 200
    data = resp.json()
    assert data["campaign_name"] == "Instance campaign"
    assert data["control_id_reference"] == "REQ-1"
    assert data["status"] == "Open"
    assert data["due_date"].startswith("2026-12-31")
    assert [h["action"] for h in data["history"]] == ["created"]

    missing = await client.get("/api/v1/task-instances/missing")
    assert missing.status_code == 404
    assert missing.json()["code"] == "CE-STORE-001"


@pytest.mark.asyncio
async def test_patch_status_and_noop(client: AsyncClient, pci, auditor):
    _, items = await _campaign_instances(client, pci, auditor)
    url = f"/api/v1/task-instances/{items[0]['id']}"

    resp = await client.patch(url, json={"status": "Pending Review"}, headers=actor_headers(auditor))
    assert resp.status_code == 200
    assert resp.json()["status"] == "Pending Review"
    assert resp.json()["transition"]["previous_status"] == "Open"
    assert resp.json()["transition"]["changed"] is True

    again = await client.patch(url, json={"status": "Pending Review"}, headers=actor_headers(auditor))
    assert again.json()["transition"]["changed"] is False

    history = await client.get(f"{url}/history")
    changes = [h for h in history.json() if h["action"] == "status_changed"]
    assert len(changes) == 1
    assert changes[0]["user_id"] == auditor.id


@pytest.mark.asyncio
async def test_patch_rejects_bad_status_and_terminal_hop(client: AsyncClient, pci, auditor):
    _, items = await _campaign_instances(client, pci, auditor)
    url = f"/api/v1/task-instances/{items[0]['id']}"

    bad = await client.patch(url, json={"status": "Done"}, headers=actor_headers(auditor))
    assert bad.status_code == 422
    assert bad.json()["code"] == "CE-TASK-001"

    await client.patch(url, json={"status": "Closed"}, headers=actor_headers(auditor))
    hop = await client.patch(url, json={"status": "Failed"}, headers=actor_headers(auditor))
    assert hop.status_code == 409
    assert hop.json()["code"] == "CE-TASK-002"

    reopened = await client.patch(url, json={"status": "In Progress"}, headers=actor_headers(auditor))
    assert reopened.json()["transition"]["reopened"] is True


@pytest.mark.asyncio
async def test_closing_every_instance_completes_campaign(client: AsyncClient, pci, auditor):
    campaign, items = await _campaign_instances(client, pci, auditor, (("REQ-2", True),))
    assert len(items) == 1
    await client.patch(f"/api/v1/task-instances/{items[0]['id']}", json={"status": "Closed"},
                       headers=actor_headers(auditor))
    resp = await client.get(f"/api/v1/campaigns/{campaign['id']}")
    assert resp.json()["status"] == "Completed"


@pytest.mark.asyncio
async def test_my_tasks_across_campaigns(client: AsyncClient, pci, auditor, engineer):
    _, first = await _campaign_instances(client, pci, auditor)
    _, second = await _campaign_instances(client, pci, auditor, (("REQ-2", True),))
    for item in (first[0], second[0]):
        resp = await client.patch(f"/api/v1/task-instances/{item['id']}",
                                  json={"assigneeUserId": engineer.id}, headers=actor_headers(auditor))
        assert resp.status_code == 200

    mine = await client.get("/api/v1/task-instances", params={"assigneeUserId": engineer.id})
    assert mine.json()["total"] == 2
    assert {i["id"] for i in mine.json()["items"]} == {first[0]["id"], second[0]["id"]}

    active = await client.get("/api/v1/task-instances", params={"campaignStatus": "Active"})
    assert active.json()["total"] == 3

    ghost = await client.patch(f"/api/v1/task-instances/{first[0]['id']}",
                               json={"ownerUserId": "ghost"}, headers=actor_headers(auditor))
    assert ghost.status_code == 404


@pytest.mark.asyncio
async def test_comments_with_idempotency_key(client: AsyncClient, pci, auditor):
    _, items = await _campaign_instances(client, pci, auditor)
    url = f"/api/v1/task-instances/{items[0]['id']}/comments"

    first = await client.post(url, json={"text": "Rule base exported"}, headers=actor_headers(auditor, "cm-1"))
    replay = await client.post(url, json={"text": "Rule base exported"}, headers=actor_headers(auditor, "cm-1"))
    assert first.status_code == 201
    assert replay.status_code == 200
    assert first.json()["id"] == replay.json()["id"]

    listed = await client.get(url)
    assert [c["text"] for c in listed.json()] == ["Rule base exported"]

    anonymous = await client.post(url, json={"text": "who am I"})
    assert anonymous.status_code == 422

    empty = await client.post(url, json={"text": ""}, headers=actor_headers(auditor))
    assert empty.status_code == 422


@pytest.mark.asyncio
async def test_evidence_add_and_copy(client: AsyncClient, pci, auditor):
    _, items = await _campaign_instances(client, pci, auditor)
    source_url = f"/api/v1/task-instances/{items[0]['id']}/evidence"
    target_url = f"/api/v1/task-instances/{items[1]['id']}/evidence"

    empty = await client.post(source_url, json={"description": "nothing"}, headers=actor_headers(auditor))
    assert empty.status_code == 422

    resp = await client.post(source_url, json={
        "fileRef": "s3://evidence/fw.png", "fileName": "fw.png", "mimeType": "image/png", "fileSize": 2048,
    }, headers=actor_headers(auditor))
    assert resp.status_code == 201
    evidence_id = resp.json()["id"]
    assert resp.json()["uploader_user_id"] == auditor.id

    partial = await client.post(f"{target_url}/copy", json={"sourceEvidenceIds": [evidence_id, "missing"]},
                                headers=actor_headers(auditor))
    assert partial.status_code == 404
    assert (await client.get(target_url)).json() == []

    copied = await client.post(f"{target_url}/copy", json={"sourceEvidenceIds": [evidence_id]},
                               headers=actor_headers(auditor))
    assert copied.status_code == 201
    assert copied.json()[0]["copied_from_id"] == evidence_id
    assert copied.json()[0]["file_ref"] == "s3://evidence/fw.png"
    assert len((await client.get(target_url)).json()) == 1
