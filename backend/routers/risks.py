# routers/risks.py - Risk register linked to requirements
from typing import Optional, List

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

import entity_store
from audit import OperationContext
from database import get_db_session
from entity_store import RiskRecord
from routers.common import ApiModel, get_operation_context, _ts

router = APIRouter(prefix="/api/v1/risks", tags=["Risks"])


class RiskCreate(ApiModel):
    risk_id: str = Field(..., min_length=1, max_length=50)
    title: str = Field(..., min_length=1, max_length=300)
    description: Optional[str] = None
    category: Optional[str] = None
    likelihood: Optional[str] = None
    impact: Optional[str] = None
    status: str = "open"
    owner_user_id: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    requirement_ids: List[str] = Field(default_factory=list)


class RiskUpdate(ApiModel):
    risk_id: Optional[str] = Field(None, min_length=1, max_length=50)
    title: Optional[str] = Field(None, min_length=1, max_length=300)
    description: Optional[str] = None
    category: Optional[str] = None
    likelihood: Optional[str] = None
    impact: Optional[str] = None
    status: Optional[str] = None
    owner_user_id: Optional[str] = None
    tags: Optional[List[str]] = None
    requirement_ids: Optional[List[str]] = None


def risk_out(record: RiskRecord) -> dict:
    r = record.risk
    return {
        "id": r.id,
        "risk_id": r.risk_id,
        "title": r.title,
        "description": r.description,
        "category": r.category,
        "likelihood": r.likelihood,
        "impact": r.impact,
        "status": r.status,
        "owner_user_id": r.owner_user_id,
        "tags": r.tags or [],
        "requirement_ids": record.requirement_ids,
        "created_at": _ts(r.created_at),
        "updated_at": _ts(r.updated_at),
    }


@router.post("", status_code=201)
async def create_risk(
    body: RiskCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    return risk_out(await entity_store.create_risk(db, ctx, body.model_dump()))


@router.get("")
async def list_risks(
    status: Optional[str] = None,
    category: Optional[str] = None,
    requirement_id: Optional[str] = Query(None, alias="requirementId"),
    db: AsyncSession = Depends(get_db_session),
):
    records = await entity_store.list_risks(db, status=status, category=category, requirement_id=requirement_id)
    return [risk_out(r) for r in records]


@router.get("/{risk_id}")
async def get_risk(risk_id: str, db: AsyncSession = Depends(get_db_session)):
    return risk_out(await entity_store.get_risk(db, risk_id))


@router.put("/{risk_id}")
async def update_risk(
    risk_id: str,
    body: RiskUpdate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    return risk_out(await entity_store.update_risk(db, ctx, risk_id, body.model_dump(exclude_unset=True)))


@router.delete("/{risk_id}")
async def delete_risk(
    risk_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    await entity_store.delete_risk(db, ctx, risk_id)
    return {"status": "deleted", "id": risk_id}
