# routers/campaigns.py - Audit campaigns: creation with task instantiation, reads, board and operator actions
from datetime import date, datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Query, Response
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

import campaign_engine
import query_projection as qp
from audit import OperationContext
from campaign_engine import CampaignRecord
from database import get_db_session
from routers.common import ApiModel, get_operation_context, _ts, _enum
from routers.requirements import requirement_out
from routers.task_instances import instance_out, page_out

router = APIRouter(prefix="/api/v1/campaigns", tags=["Campaigns"])


# ============================================================
# SCHEMAS
# ============================================================

class RequirementSelectionIn(ApiModel):
    requirement_id: str
    is_applicable: bool = True


class CampaignCreate(ApiModel):
    standard_id: str
    name: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    selected_requirements: List[RequirementSelectionIn] = Field(default_factory=list)
    idempotency_key: Optional[str] = Field(None, max_length=200)


class CampaignUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=300)
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    standard_id: Optional[str] = None
    selected_requirements: Optional[List[RequirementSelectionIn]] = None


class AdHocInstanceCreate(ApiModel):
    requirement_id: str
    title: str = Field(..., min_length=1, max_length=500)
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    evidence_types_expected: List[str] = Field(default_factory=list)
    owner_user_id: Optional[str] = None
    assignee_user_id: Optional[str] = None
    due_date: Optional[datetime] = None


def campaign_out(record: CampaignRecord) -> dict:
    c = record.campaign
    return {
        "id": c.id,
        "name": c.name,
        "description": c.description,
        "standard_id": c.standard_id,
        "standard_name": record.standard_name,
        "start_date": _ts(c.start_date),
        "end_date": _ts(c.end_date),
        "status": _enum(record.status),
        "instance_count": record.instance_count,
        "status_counts": record.status_counts,
        "activated_at": _ts(c.activated_at),
        "closed_at": _ts(c.closed_at),
        "created_by": c.created_by,
        "created_at": _ts(c.created_at),
        "updated_at": _ts(c.updated_at),
    }


# ============================================================
# CAMPAIGN ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_campaign(
    body: CampaignCreate,
    response: Response,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Create a campaign and one task instance per (applicable requirement, linked template).
    Retrying with the same Idempotency-Key returns the same campaign and creates nothing twice.
    """
    record, summary = await campaign_engine.create_campaign(db, ctx, body.model_dump())
    if summary.replayed:
        response.status_code = 200
    out = campaign_out(record)
    out["instantiation_summary"] = summary.to_dict()
    return out


@router.get("")
async def list_campaigns(
    status: Optional[str] = None,
    standard_id: Optional[str] = Query(None, alias="standardId"),
    db: AsyncSession = Depends(get_db_session),
):
    records = await campaign_engine.list_campaigns(db, status=status, standard_id=standard_id)
    return [campaign_out(r) for r in records]


@router.get("/{campaign_id}")
async def get_campaign(campaign_id: str, db: AsyncSession = Depends(get_db_session)):
    return campaign_out(await campaign_engine.get_campaign(db, campaign_id))


@router.put("/{campaign_id}")
async def update_campaign(
    campaign_id: str,
    body: CampaignUpdate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Name, description and dates only; the requirement selection is frozen."""
    record = await campaign_engine.update_campaign(db, ctx, campaign_id, body.model_dump(exclude_unset=True))
    return campaign_out(record)


@router.delete("/{campaign_id}")
async def delete_campaign(
    campaign_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    await campaign_engine.delete_campaign(db, ctx, campaign_id)
    return {"status": "deleted", "id": campaign_id}


@router.post("/{campaign_id}/activate")
async def activate_campaign(
    campaign_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    return campaign_out(await campaign_engine.activate_campaign(db, ctx, campaign_id))


@router.post("/{campaign_id}/close")
async def close_campaign(
    campaign_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    return campaign_out(await campaign_engine.close_campaign(db, ctx, campaign_id))


@router.get("/{campaign_id}/selected-requirements")
async def list_selected_requirements(campaign_id: str, db: AsyncSession = Depends(get_db_session)):
    rows = await campaign_engine.get_selected_requirements(db, campaign_id)
    out = []
    for selection, requirement in rows:
        item = requirement_out(requirement)
        item["is_applicable"] = selection.is_applicable
        out.append(item)
    return out


# ============================================================
# TASK INSTANCES WITHIN A CAMPAIGN
# ============================================================

@router.get("/{campaign_id}/task-instances")
async def list_campaign_task_instances(
    campaign_id: str,
    status: Optional[List[str]] = Query(None),
    category: Optional[List[str]] = Query(None),
    owner_user_id: Optional[str] = Query(None, alias="ownerUserId"),
    assignee_user_id: Optional[str] = Query(None, alias="assigneeUserId"),
    requirement_id: Optional[str] = Query(None, alias="requirementId"),
    overdue: Optional[bool] = None,
    q: Optional[str] = None,
    sort_by: str = Query("title", alias="sortBy"),
    descending: bool = False,
    limit: Optional[int] = Query(None, ge=0, le=500),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db_session),
):
    await campaign_engine.get_campaign(db, campaign_id)
    criteria = qp.InstanceFilter(
        status=status, category=category, owner_user_id=owner_user_id,
        assignee_user_id=assignee_user_id, requirement_id=requirement_id, overdue=overdue, text=q,
    )
    views = qp.filter_instances(await qp.load_instance_views(db, campaign_id=campaign_id), criteria)
    return page_out(qp.paginate(qp.sort_views(views, sort_by, descending), limit, offset))


@router.get("/{campaign_id}/task-instances/board")
async def campaign_board(
    campaign_id: str,
    group_by: str = Query("status", alias="groupBy", pattern="^(status|category)$"),
    owner_user_id: Optional[str] = Query(None, alias="ownerUserId"),
    q: Optional[str] = None,
    db: AsyncSession = Depends(get_db_session),
):
    """Kanban view: every status is a column, empty or not"""
    record = await campaign_engine.get_campaign(db, campaign_id)
    views = qp.filter_instances(
        await qp.load_instance_views(db, campaign_id=campaign_id),
        qp.InstanceFilter(owner_user_id=owner_user_id, text=q),
    )
    views = qp.sort_views(views, "title")
    groups = qp.group_by_status(views) if group_by == "status" else qp.group_by_category(views)
    return {
        "campaign_id": campaign_id,
        "campaign_status": _enum(record.status),
        "group_by": group_by,
        "columns": [
            {"key": key, "count": len(items), "tasks": [v.to_dict() for v in items]}
            for key, items in groups.items()
        ],
        "total": len(views),
    }


@router.post("/{campaign_id}/task-instances", status_code=201)
async def create_ad_hoc_instance(
    campaign_id: str,
    body: AdHocInstanceCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """A task instance with no template, for a requirement applicable in this campaign"""
    instance = await campaign_engine.create_ad_hoc_instance(db, ctx, campaign_id, body.model_dump())
    return instance_out(instance)
