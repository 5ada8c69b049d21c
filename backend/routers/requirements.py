# routers/requirements.py - Requirements (controls) belonging to a standard
from datetime import date
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

import entity_store
from audit import OperationContext
from database import get_db_session
from models import Requirement
from routers.common import ApiModel, get_operation_context, _ts, _enum

router = APIRouter(prefix="/api/v1/requirements", tags=["Requirements"])


class RequirementCreate(ApiModel):
    standard_id: str
    control_id_reference: str = Field(..., min_length=1, max_length=100)
    requirement_text: str = Field(..., min_length=1)
    priority: Optional[str] = None
    status: Optional[str] = "active"
    version: Optional[str] = None
    official_link: Optional[str] = None
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None
    tags: List[str] = Field(default_factory=list)


class RequirementUpdate(ApiModel):
    standard_id: Optional[str] = None
    control_id_reference: Optional[str] = Field(None, min_length=1, max_length=100)
    requirement_text: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    version: Optional[str] = None
    official_link: Optional[str] = None
    effective_date: Optional[date] = None
    expiry_date: Optional[date] = None
    tags: Optional[List[str]] = None


def requirement_out(r: Requirement, task_template_ids: List[str] = None) -> dict:
    out = {
        "id": r.id,
        "standard_id": r.standard_id,
        "control_id_reference": r.control_id_reference,
        "requirement_text": r.requirement_text,
        "priority": r.priority,
        "status": _enum(r.status),
        "version": r.version,
        "official_link": r.official_link,
        "effective_date": _ts(r.effective_date),
        "expiry_date": _ts(r.expiry_date),
        "tags": r.tags or [],
        "created_at": _ts(r.created_at),
        "updated_at": _ts(r.updated_at),
    }
    if task_template_ids is not None:
        out["task_template_ids"] = task_template_ids
    return out


@router.post("", status_code=201)
async def create_requirement(
    body: RequirementCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    requirement = await entity_store.create_requirement(db, ctx, body.model_dump())
    return requirement_out(requirement, [])


@router.get("")
async def list_requirements(
    standard_id: Optional[str] = Query(None, alias="standardId"),
    status: Optional[str] = None,
    db: AsyncSession = Depends(get_db_session),
):
    requirements = await entity_store.list_requirements(db, standard_id=standard_id, status=status)
    return [requirement_out(r) for r in requirements]


@router.get("/{requirement_id}")
async def get_requirement(requirement_id: str, db: AsyncSession = Depends(get_db_session)):
    requirement = await entity_store.get_or_404(db, Requirement, requirement_id)
    return requirement_out(requirement, await entity_store.linked_template_ids(db, requirement_id))


@router.put("/{requirement_id}")
async def update_requirement(
    requirement_id: str,
    body: RequirementUpdate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    requirement = await entity_store.update_requirement(
        db, ctx, requirement_id, body.model_dump(exclude_unset=True),
    )
    return requirement_out(requirement, await entity_store.linked_template_ids(db, requirement_id))


@router.delete("/{requirement_id}")
async def delete_requirement(
    requirement_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    await entity_store.delete_requirement(db, ctx, requirement_id)
    return {"status": "deleted", "id": requirement_id}
