# tests/test_check_executor.py - Automated checks on task instances
import httpx
import pytest
from httpx import AsyncClient
from sqlalchemy import select

from campaign_engine import create_campaign
from check_executor import (
    execute_check, list_results, run_check, registered_check_types,
    STATUS_SUCCESS, STATUS_FAILED, STATUS_ERROR, STATUS_NOT_APPLICABLE,
)
from errors import NotFoundError
from models import AuditLog, AuditAction, TaskInstance, TaskInstanceHistory
from tests.conftest import actor_headers, ctx_for


def _instance(check_type=None, target=None, **parameters):
    return TaskInstance(title="Automated check", check_type=check_type, target=target, parameters=parameters)


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


async def _stored_instance(db, pci, auditor, **check):
    record, _ = await create_campaign(db, ctx_for(auditor), {
        "standard_id": pci["standard"].id,
        "name": "Automated campaign",
        "selected_requirements": [{"requirement_id": pci["REQ-2"].id, "is_applicable": True}],
    })
    result = await db.execute(select(TaskInstance).where(TaskInstance.campaign_id == record.campaign.id))
    instance = result.scalars().one()
    for name, value in check.items():
        setattr(instance, name, value)
    await db.commit()
    return instance


# ============================================================
# EXECUTORS
# ============================================================

def test_builtin_executors_registered():
    assert {"http_get_check", "file_exists_check"} <= set(registered_check_types())


@pytest.mark.asyncio
async def test_http_get_passes_on_expected_status():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(200, text="ok")

    async with _client(handler) as client:
        outcome = await run_check(_instance("http_get_check", "https://status.example.test/", apiPath="/health"), client)

    assert seen == ["https://status.example.test/health"]
    assert outcome.status == STATUS_SUCCESS
    assert "Check PASSED" in outcome.output


@pytest.mark.asyncio
async def test_http_get_fails_on_other_status():
    async with _client(lambda request: httpx.Response(503, text="x" * 800)) as client:
        outcome = await run_check(_instance("http_get_check", "https://status.example.test"), client)

    assert outcome.status == STATUS_FAILED
    assert "(body truncated)" in outcome.output


@pytest.mark.asyncio
async def test_http_get_custom_expected_status():
    async with _client(lambda request: httpx.Response(401)) as client:
        outcome = await run_check(
            _instance("http_get_check", "https://api.example.test", apiPath="admin", expected_status_code=401), client,
        )
    assert outcome.status == STATUS_SUCCESS


@pytest.mark.asyncio
async def test_http_get_connection_error_is_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        outcome = await run_check(_instance("http_get_check", "https://down.example.test"), client)

    assert outcome.status == STATUS_ERROR
    assert "connection refused" in outcome.output


@pytest.mark.asyncio
async def test_http_get_without_target_is_error():
    outcome = await run_check(_instance("http_get_check"))
    assert outcome.status == STATUS_ERROR


@pytest.mark.asyncio
async def test_file_exists(tmp_path):
    present = tmp_path / "sshd_config"
    present.write_text("PermitRootLogin no\n")

    assert (await run_check(_instance("file_exists_check", filePath=str(present)))).status == STATUS_SUCCESS
    assert (await run_check(_instance("file_exists_check", str(tmp_path / "missing")))).status == STATUS_FAILED
    assert (await run_check(_instance("file_exists_check"))).status == STATUS_ERROR


@pytest.mark.asyncio
async def test_manual_and_unknown_check_types():
    assert (await run_check(_instance())).status == STATUS_NOT_APPLICABLE
    outcome = await run_check(_instance("port_scan_check"))
    assert outcome.status == STATUS_ERROR
    assert "http_get_check" in outcome.output


# ============================================================
# STORED RESULTS
# ============================================================

@pytest.mark.asyncio
async def test_execute_stores_result_and_last_status(db_session, pci, auditor, tmp_path):
    instance = await _stored_instance(
        db_session, pci, auditor, check_type="file_exists_check", parameters={"filePath": str(tmp_path)},
    )

    result = await execute_check(db_session, ctx_for(auditor), instance.id)

    assert result.status == STATUS_SUCCESS
    assert result.executed_by_user_id == auditor.id
    assert instance.last_check_status == STATUS_SUCCESS
    assert instance.last_checked_at is not None
    assert [r.id for r in await list_results(db_session, instance.id)] == [result.id]

    checked = (await db_session.execute(
        select(TaskInstanceHistory).where(
            TaskInstanceHistory.task_instance_id == instance.id, TaskInstanceHistory.action == "checked",
        )
    )).scalars().all()
    assert [h.new_value for h in checked] == [STATUS_SUCCESS]
    audits = (await db_session.execute(
        select(AuditLog).where(AuditLog.action == AuditAction.EXECUTE)
    )).scalars().all()
    assert [a.entity_id for a in audits] == [instance.id]


@pytest.mark.asyncio
async def test_execute_http_check_with_injected_client(db_session, pci, auditor):
    instance = await _stored_instance(
        db_session, pci, auditor, check_type="http_get_check", target="https://fw.example.test",
        parameters={"apiPath": "/rules", "expected_status_code": 200},
    )
    async with _client(lambda request: httpx.Response(500)) as client:
        result = await execute_check(db_session, ctx_for(auditor), instance.id, http_client=client)

    assert result.status == STATUS_FAILED
    assert instance.last_check_status == STATUS_FAILED


@pytest.mark.asyncio
async def test_execute_unknown_instance(db_session, auditor):
    with pytest.raises(NotFoundError):
        await execute_check(db_session, ctx_for(auditor), "missing")
    with pytest.raises(NotFoundError):
        await list_results(db_session, "missing")


# ============================================================
# HTTP
# ============================================================

@pytest.mark.asyncio
async def test_execute_and_list_results_endpoints(client: AsyncClient, db_session, pci, auditor):
    instance = await _stored_instance(db_session, pci, auditor)

    resp = await client.post(f"/api/v1/task-instances/{instance.id}/execute", headers=actor_headers(auditor))
    assert resp.status_code == 200
    assert resp.json()["status"] == STATUS_NOT_APPLICABLE

    resp = await client.get(f"/api/v1/task-instances/{instance.id}/results")
    assert resp.status_code == 200
    assert [r["status"] for r in resp.json()] == [STATUS_NOT_APPLICABLE]

    detail = (await client.get(f"/api/v1/task-instances/{instance.id}")).json()
    assert detail["last_check_status"] == STATUS_NOT_APPLICABLE

    resp = await client.post("/api/v1/task-instances/missing/execute", headers=actor_headers(auditor))
    assert resp.status_code == 404
