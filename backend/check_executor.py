# check_executor.py - Automated checks for task instances
"""
A task instance whose check_type names a registered executor can be run on
demand. Every run stores a TaskInstanceResult, even when the check could not
be carried out, and updates the instance's last_checked_at/last_check_status.

Executors read the instance's snapshot of target and parameters:

- http_get_check: GET <target>/<parameters.apiPath>; passes when the response
  code equals parameters.expected_status_code (200 when omitted).
- file_exists_check: passes when parameters.filePath (or the target) exists
  on the host running this service.

Result statuses: Success, Failed (the check ran and did not pass), Error (the
check could not run) and Not Applicable (no check_type).
"""

import os
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from audit import OperationContext, record_audit
from database import bounded, unit_of_work
from entity_store import get_or_404
from locks import get_entity_locks
from models import AuditAction, TaskInstance, TaskInstanceHistory, TaskInstanceResult, User, utcnow

logger = logging.getLogger("compliance-engine.checks")

STATUS_SUCCESS = "Success"
STATUS_FAILED = "Failed"
STATUS_ERROR = "Error"
STATUS_NOT_APPLICABLE = "Not Applicable"

HTTP_CHECK_TIMEOUT_SECONDS = float(os.getenv("HTTP_CHECK_TIMEOUT_SECONDS", "10"))
BODY_SNIPPET_LIMIT = 500


@dataclass
class CheckOutcome:
    status: str
    output: str


Executor = Callable[[TaskInstance, httpx.AsyncClient], Awaitable[CheckOutcome]]

_executors: Dict[str, Executor] = {}


def register_executor(check_type: str):
    def decorator(fn: Executor) -> Executor:
        if check_type in _executors:
            raise ValueError(f"Executor already registered for check type: {check_type}")
        _executors[check_type] = fn
        return fn
    return decorator


def get_executor(check_type: str) -> Optional[Executor]:
    return _executors.get(check_type)


def registered_check_types() -> List[str]:
    return sorted(_executors)


# ============================================================
# EXECUTORS
# ============================================================

@register_executor("http_get_check")
async def http_get_check(instance: TaskInstance, client: httpx.AsyncClient) -> CheckOutcome:
    params = instance.parameters or {}
    if not instance.target:
        return CheckOutcome(STATUS_ERROR, "http_get_check needs a target base URL, e.g. https://service.internal\n")
    try:
        expected = int(params.get("expected_status_code", 200))
    except (TypeError, ValueError):
        return CheckOutcome(
            STATUS_ERROR, f"expected_status_code must be a number, got {params.get('expected_status_code')!r}\n",
        )

    url = instance.target.rstrip("/")
    if params.get("apiPath"):
        url += "/" + str(params["apiPath"]).lstrip("/")
    lines = [f"GET {url}"]

    try:
        resp = await client.get(url)
    except httpx.TimeoutException:
        lines.append("Request timed out")
        return CheckOutcome(STATUS_ERROR, "\n".join(lines) + "\n")
    except httpx.HTTPError as e:
        lines.append(f"Request failed: {e}")
        return CheckOutcome(STATUS_ERROR, "\n".join(lines) + "\n")

    snippet = resp.text
    if len(snippet) > BODY_SNIPPET_LIMIT:
        snippet = snippet[:BODY_SNIPPET_LIMIT] + "...\n(body truncated)"
    lines.append(f"Response status: {resp.status_code}")
    lines.append(f"Response body snippet:\n{snippet}")

    if resp.status_code == expected:
        lines.append(f"Check PASSED: received expected status code {expected}")
        status = STATUS_SUCCESS
    else:
        lines.append(f"Check FAILED: expected status code {expected}, received {resp.status_code}")
        status = STATUS_FAILED
    return CheckOutcome(status, "\n".join(lines) + "\n")


@register_executor("file_exists_check")
async def file_exists_check(instance: TaskInstance, client: httpx.AsyncClient) -> CheckOutcome:
    path = (instance.parameters or {}).get("filePath") or instance.target
    if not path:
        return CheckOutcome(STATUS_ERROR, "file_exists_check needs parameters.filePath or a target path\n")
    if os.path.exists(path):
        return CheckOutcome(STATUS_SUCCESS, f"Check PASSED: {path} exists\n")
    return CheckOutcome(STATUS_FAILED, f"Check FAILED: {path} does not exist\n")


async def run_check(instance: TaskInstance, http_client: Optional[httpx.AsyncClient] = None) -> CheckOutcome:
    if not instance.check_type:
        return CheckOutcome(
            STATUS_NOT_APPLICABLE, "This task is not configured for automated execution (no check_type)\n",
        )
    executor = get_executor(instance.check_type)
    if executor is None:
        return CheckOutcome(
            STATUS_ERROR,
            f"No executor for check type {instance.check_type!r}; "
            f"known types: {', '.join(registered_check_types())}\n",
        )
    if http_client is not None:
        return await executor(instance, http_client)
    async with httpx.AsyncClient(timeout=HTTP_CHECK_TIMEOUT_SECONDS) as client:
        return await executor(instance, client)


# ============================================================
# PERSISTENCE
# ============================================================

async def execute_check(db: AsyncSession, ctx: OperationContext, instance_id: str,
                        http_client: Optional[httpx.AsyncClient] = None) -> TaskInstanceResult:
    """Run the instance's check and record the outcome. The check itself runs outside the instance lock."""
    if ctx.user_id:
        await get_or_404(db, User, ctx.user_id)
    instance = await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
    outcome = await run_check(instance, http_client)

    async with get_entity_locks().hold("task_instance", instance_id):
        instance = await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
        async with unit_of_work(db, "store check result"):
            result = TaskInstanceResult(
                task_instance_id=instance.id,
                executed_by_user_id=ctx.user_id,
                executed_at=utcnow(),
                check_type=instance.check_type,
                status=outcome.status,
                output=outcome.output,
            )
            db.add(result)
            previous = instance.last_check_status
            instance.last_checked_at = result.executed_at
            instance.last_check_status = outcome.status
            db.add(TaskInstanceHistory(
                task_instance_id=instance.id, user_id=ctx.user_id, action="checked",
                field_name="last_check_status", old_value=previous, new_value=outcome.status,
            ))
            record_audit(db, ctx, AuditAction.EXECUTE, "task_instance", instance.id, {
                "check_type": instance.check_type, "status": outcome.status,
            })

    logger.info(f"Check {instance.check_type or '-'} on task instance {instance_id}: {outcome.status}")
    return result


async def list_results(db: AsyncSession, instance_id: str) -> List[TaskInstanceResult]:
    """Stored check results for an instance, newest first"""
    await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
    stmt = (
        select(TaskInstanceResult)
        .where(TaskInstanceResult.task_instance_id == instance_id)
        .order_by(TaskInstanceResult.executed_at.desc(), TaskInstanceResult.id)
    )
    return list((await bounded(db.execute(stmt))).scalars().all())
