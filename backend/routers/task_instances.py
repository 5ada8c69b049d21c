# routers/task_instances.py - Task instance lifecycle, comments, evidence and history
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Response
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

import check_executor
import query_projection as qp
import task_lifecycle
from audit import OperationContext
from database import get_db_session
from models import TaskInstance, TaskInstanceResult, Comment, Evidence, TaskInstanceHistory
from routers.common import ApiModel, get_operation_context, _ts, _enum

router = APIRouter(prefix="/api/v1/task-instances", tags=["Task Instances"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskInstanceUpdate(ApiModel):
    status: Optional[str] = None
    owner_user_id: Optional[str] = None
    assignee_user_id: Optional[str] = None
    due_date: Optional[datetime] = None


class CommentCreate(ApiModel):
    text: str = Field(..., min_length=1, max_length=10000)


class EvidenceCreate(ApiModel):
    file_ref: Optional[str] = None
    file_name: Optional[str] = None
    mime_type: Optional[str] = None
    file_size: Optional[int] = Field(None, ge=0)
    url: Optional[str] = None
    text: Optional[str] = None
    description: Optional[str] = None


class EvidenceCopy(ApiModel):
    source_evidence_ids: List[str] = Field(..., min_length=1)


# ============================================================
# SERIALISERS
# ============================================================

def instance_out(t: TaskInstance, now: Optional[datetime] = None) -> dict:
    return {
        "id": t.id,
        "campaign_id": t.campaign_id,
        "requirement_id": t.requirement_id,
        "task_template_id": t.task_template_id,
        "title": t.title,
        "description": t.description,
        "category": t.category,
        "priority": t.priority,
        "check_type": t.check_type,
        "target": t.target,
        "parameters": t.parameters or {},
        "evidence_types_expected": t.evidence_types_expected or [],
        "status": _enum(t.status),
        "owner_user_id": t.owner_user_id,
        "assignee_user_id": t.assignee_user_id,
        "due_date": _ts(t.due_date),
        "is_overdue": task_lifecycle.is_overdue(t.due_date, t.status, now),
        "started_at": _ts(t.started_at),
        "completed_at": _ts(t.completed_at),
        "last_checked_at": _ts(t.last_checked_at),
        "last_check_status": t.last_check_status,
        "created_at": _ts(t.created_at),
        "updated_at": _ts(t.updated_at),
    }


def comment_out(c: Comment) -> dict:
    return {
        "id": c.id,
        "task_instance_id": c.task_instance_id,
        "user_id": c.user_id,
        "text": c.text,
        "created_at": _ts(c.created_at),
    }


def evidence_out(e: Evidence) -> dict:
    return {
        "id": e.id,
        "task_instance_id": e.task_instance_id,
        "uploader_user_id": e.uploader_user_id,
        "file_ref": e.file_ref,
        "file_name": e.file_name,
        "mime_type": e.mime_type,
        "file_size": e.file_size,
        "url": e.url,
        "text": e.text,
        "description": e.description,
        "copied_from_id": e.copied_from_id,
        "uploaded_at": _ts(e.uploaded_at),
    }


def history_out(h: TaskInstanceHistory) -> dict:
    return {
        "id": h.id,
        "user_id": h.user_id,
        "action": h.action,
        "field_name": h.field_name,
        "old_value": h.old_value,
        "new_value": h.new_value,
        "created_at": _ts(h.created_at),
    }


def result_out(r: TaskInstanceResult) -> dict:
    return {
        "id": r.id,
        "task_instance_id": r.task_instance_id,
        "executed_by_user_id": r.executed_by_user_id,
        "executed_at": _ts(r.executed_at),
        "check_type": r.check_type,
        "status": r.status,
        "output": r.output,
    }


def page_out(page: qp.Page) -> dict:
    return {
        "items": [v.to_dict() for v in page.items],
        "total": page.total,
        "limit": page.limit,
        "offset": page.offset,
        "has_more": page.has_more,
    }


# ============================================================
# QUERIES
# ============================================================

@router.get("")
async def list_task_instances(
    owner_user_id: Optional[str] = Query(None, alias="ownerUserId"),
    assignee_user_id: Optional[str] = Query(None, alias="assigneeUserId"),
    campaign_status: Optional[str] = Query(None, alias="campaignStatus"),
    standard_id: Optional[str] = Query(None, alias="standardId"),
    status: Optional[List[str]] = Query(None),
    overdue: Optional[bool] = None,
    q: Optional[str] = None,
    sort_by: str = Query("due_date", alias="sortBy"),
    descending: bool = False,
    limit: Optional[int] = Query(None, ge=0, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db_session),
):
    """Task instances across campaigns ("my tasks" when filtered by owner or assignee)"""
    criteria = qp.InstanceFilter(
        status=status, owner_user_id=owner_user_id, assignee_user_id=assignee_user_id,
        campaign_status=campaign_status, standard_id=standard_id, overdue=overdue, text=q,
    )
    views = qp.filter_instances(await qp.load_instance_views(db), criteria)
    return page_out(qp.paginate(qp.sort_views(views, sort_by, descending), limit, offset))


@router.get("/{instance_id}")
async def get_task_instance(instance_id: str, db: AsyncSession = Depends(get_db_session)):
    detail = await task_lifecycle.get_instance_detail(db, instance_id)
    out = instance_out(detail.instance)
    out.update({
        "is_overdue": detail.is_overdue,
        "campaign_name": detail.campaign.name if detail.campaign else None,
        "control_id_reference": detail.requirement.control_id_reference if detail.requirement else None,
        "standard_id": detail.requirement.standard_id if detail.requirement else None,
        "task_template_title": detail.template.title if detail.template else None,
        "comments": [comment_out(c) for c in detail.comments],
        "evidence": [evidence_out(e) for e in detail.evidence],
        "history": [history_out(h) for h in detail.history],
    })
    return out


# ============================================================
# LIFECYCLE
# ============================================================

@router.patch("/{instance_id}")
async def update_task_instance(
    instance_id: str,
    body: TaskInstanceUpdate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Change status, owner, assignee or due date. Setting the current status is a no-op."""
    instance, transition = await task_lifecycle.update_instance(
        db, ctx, instance_id, body.model_dump(exclude_unset=True),
    )
    out = instance_out(instance)
    out["transition"] = transition.to_dict() if transition else None
    return out


@router.get("/{instance_id}/history")
async def list_history(instance_id: str, db: AsyncSession = Depends(get_db_session)):
    detail = await task_lifecycle.get_instance_detail(db, instance_id)
    return [history_out(h) for h in detail.history]


# ============================================================
# COMMENTS & EVIDENCE
# ============================================================

@router.get("/{instance_id}/comments")
async def list_comments(instance_id: str, db: AsyncSession = Depends(get_db_session)):
    detail = await task_lifecycle.get_instance_detail(db, instance_id)
    return [comment_out(c) for c in detail.comments]


@router.post("/{instance_id}/comments", status_code=201)
async def add_comment(
    instance_id: str,
    body: CommentCreate,
    response: Response,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    comment, created = await task_lifecycle.add_comment(db, ctx, instance_id, body.text)
    if not created:
        response.status_code = 200
    return comment_out(comment)


@router.get("/{instance_id}/evidence")
async def list_evidence(instance_id: str, db: AsyncSession = Depends(get_db_session)):
    detail = await task_lifecycle.get_instance_detail(db, instance_id)
    return [evidence_out(e) for e in detail.evidence]


@router.post("/{instance_id}/evidence", status_code=201)
async def add_evidence(
    instance_id: str,
    body: EvidenceCreate,
    response: Response,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    evidence, created = await task_lifecycle.add_evidence(db, ctx, instance_id, body.model_dump())
    if not created:
        response.status_code = 200
    return evidence_out(evidence)


@router.post("/{instance_id}/evidence/copy", status_code=201)
async def copy_evidence(
    instance_id: str,
    body: EvidenceCopy,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    copies = await task_lifecycle.copy_evidence(db, ctx, instance_id, body.source_evidence_ids)
    return [evidence_out(e) for e in copies]


# ============================================================
# AUTOMATED CHECKS
# ============================================================

@router.post("/{instance_id}/execute")
async def execute_check(
    instance_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Run the instance's automated check now and store the result"""
    result = await check_executor.execute_check(db, ctx, instance_id)
    return result_out(result)


@router.get("/{instance_id}/results")
async def list_check_results(instance_id: str, db: AsyncSession = Depends(get_db_session)):
    return [result_out(r) for r in await check_executor.list_results(db, instance_id)]
