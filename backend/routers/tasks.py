# routers/tasks.py - Task templates ("master tasks"), requirement linkage and the task library
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

import entity_store
import query_projection as qp
from audit import OperationContext
from database import get_db_session
from entity_store import TaskTemplateRecord
from linkage import link_task_to_requirements, unlink_task_from_requirements
from routers.common import ApiModel, get_operation_context, _ts, _enum

router = APIRouter(prefix="/api/v1/tasks", tags=["Task Templates"])


# ============================================================
# SCHEMAS
# ============================================================

class TaskTemplateCreate(ApiModel):
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    category: Optional[str] = None
    default_priority: Optional[str] = None
    high_level_check_type: Optional[str] = None
    check_type: Optional[str] = None
    target: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    evidence_types_expected: List[str] = Field(default_factory=list)
    requirement_ids: List[str] = Field(default_factory=list)
    linked_document_ids: List[str] = Field(default_factory=list)


class TaskTemplateUpdate(ApiModel):
    title: Optional[str] = Field(None, min_length=1, max_length=500)
    description: Optional[str] = None
    category: Optional[str] = None
    default_priority: Optional[str] = None
    high_level_check_type: Optional[str] = None
    check_type: Optional[str] = None
    target: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    evidence_types_expected: Optional[List[str]] = None
    requirement_ids: Optional[List[str]] = None
    linked_document_ids: Optional[List[str]] = None


class LinkRequest(ApiModel):
    requirement_ids: List[str] = Field(..., min_length=1)


def template_out(record: TaskTemplateRecord) -> dict:
    t = record.template
    return {
        "id": t.id,
        "title": t.title,
        "description": t.description,
        "category": t.category,
        "default_priority": t.default_priority,
        "high_level_check_type": _enum(t.high_level_check_type),
        "check_type": t.check_type,
        "target": t.target,
        "parameters": t.parameters or {},
        "evidence_types_expected": t.evidence_types_expected or [],
        "requirement_ids": record.requirement_ids,
        "linked_document_ids": record.document_ids,
        "created_at": _ts(t.created_at),
        "updated_at": _ts(t.updated_at),
    }


# ============================================================
# TEMPLATE CRUD
# ============================================================

@router.post("", status_code=201)
async def create_task_template(
    body: TaskTemplateCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    record = await entity_store.create_task_template(db, ctx, body.model_dump())
    return template_out(record)


@router.get("")
async def list_task_templates(
    category: Optional[str] = None,
    requirement_id: Optional[str] = Query(None, alias="requirementId"),
    standard_id: Optional[str] = Query(None, alias="standardId"),
    q: Optional[str] = None,
    sort_by: str = Query("title", alias="sortBy"),
    db: AsyncSession = Depends(get_db_session),
):
    criteria = qp.TemplateFilter(category=category, requirement_id=requirement_id,
                                 standard_id=standard_id, text=q)
    views = qp.sort_views(qp.filter_templates(await qp.load_template_views(db), criteria), sort_by)
    records = {r.template.id: r for r in await entity_store.list_task_templates(db)}
    return [template_out(records[v.id]) for v in views]


@router.get("/library")
async def task_library(
    standard_id: Optional[str] = Query(None, alias="standardId"),
    q: Optional[str] = None,
    db: AsyncSession = Depends(get_db_session),
):
    """Task templates grouped by category"""
    views = qp.filter_templates(await qp.load_template_views(db), qp.TemplateFilter(standard_id=standard_id, text=q))
    groups = qp.group_by_category(qp.sort_views(views, "title"))
    return {
        "groups": [
            {"category": name, "count": len(items), "tasks": [v.to_dict() for v in items]}
            for name, items in groups.items()
        ],
        "total": len(views),
    }


@router.get("/{task_template_id}")
async def get_task_template(task_template_id: str, db: AsyncSession = Depends(get_db_session)):
    return template_out(await entity_store.get_task_template(db, task_template_id))


@router.put("/{task_template_id}")
async def update_task_template(
    task_template_id: str,
    body: TaskTemplateUpdate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Edits never reach task instances already created from this template."""
    record = await entity_store.update_task_template(
        db, ctx, task_template_id, body.model_dump(exclude_unset=True),
    )
    return template_out(record)


@router.delete("/{task_template_id}")
async def delete_task_template(
    task_template_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    await entity_store.delete_task_template(db, ctx, task_template_id)
    return {"status": "deleted", "id": task_template_id}


# ============================================================
# LINKAGE
# ============================================================

@router.post("/{task_template_id}/link")
async def link_requirements(
    task_template_id: str,
    body: LinkRequest,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    result = await link_task_to_requirements(db, ctx, task_template_id, body.requirement_ids)
    return result.to_dict()


@router.post("/{task_template_id}/unlink")
async def unlink_requirements(
    task_template_id: str,
    body: LinkRequest,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    result = await unlink_task_from_requirements(db, ctx, task_template_id, body.requirement_ids)
    return result.to_dict()


@router.get("/{task_template_id}/instances")
async def list_template_instances(
    task_template_id: str,
    status: Optional[List[str]] = Query(None),
    sort_by: str = Query("campaign_name", alias="sortBy"),
    db: AsyncSession = Depends(get_db_session),
):
    """Task instances created from this template, across campaigns"""
    await entity_store.get_task_template(db, task_template_id)
    views = await qp.load_instance_views(db, task_template_id=task_template_id)
    views = qp.sort_views(qp.filter_instances(views, qp.InstanceFilter(status=status)), sort_by)
    return [v.to_dict() for v in views]
