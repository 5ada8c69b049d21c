# routers/standards.py - Compliance standards (PCI DSS, ISO 27001, ...)
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import Field
from sqlalchemy.ext.asyncio import AsyncSession

import entity_store
from audit import OperationContext
from database import get_db_session
from models import Standard
from routers.common import ApiModel, get_operation_context, _ts

router = APIRouter(prefix="/api/v1/standards", tags=["Standards"])


# ============================================================
# SCHEMAS
# ============================================================

class StandardCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=300)
    short_name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    issuing_body: Optional[str] = None
    jurisdiction: Optional[str] = None
    industry: Optional[str] = None
    official_link: Optional[str] = None


class StandardUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=300)
    short_name: Optional[str] = None
    description: Optional[str] = None
    version: Optional[str] = None
    issuing_body: Optional[str] = None
    jurisdiction: Optional[str] = None
    industry: Optional[str] = None
    official_link: Optional[str] = None


def standard_out(s: Standard) -> dict:
    return {
        "id": s.id,
        "name": s.name,
        "short_name": s.short_name,
        "description": s.description,
        "version": s.version,
        "issuing_body": s.issuing_body,
        "jurisdiction": s.jurisdiction,
        "industry": s.industry,
        "official_link": s.official_link,
        "retired_at": _ts(s.retired_at),
        "is_retired": s.retired_at is not None,
        "created_at": _ts(s.created_at),
        "updated_at": _ts(s.updated_at),
    }


# ============================================================
# ENDPOINTS
# ============================================================

@router.post("", status_code=201)
async def create_standard(
    body: StandardCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    standard = await entity_store.create_standard(db, ctx, body.model_dump())
    return standard_out(standard)


@router.get("")
async def list_standards(
    include_retired: bool = Query(True, alias="includeRetired"),
    db: AsyncSession = Depends(get_db_session),
):
    return [standard_out(s) for s in await entity_store.list_standards(db, include_retired)]


@router.get("/{standard_id}")
async def get_standard(standard_id: str, db: AsyncSession = Depends(get_db_session)):
    return standard_out(await entity_store.get_or_404(db, Standard, standard_id))


@router.put("/{standard_id}")
async def update_standard(
    standard_id: str,
    body: StandardUpdate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    standard = await entity_store.update_standard(db, ctx, standard_id, body.model_dump(exclude_unset=True))
    return standard_out(standard)


@router.post("/{standard_id}/retire")
async def retire_standard(
    standard_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Soft-retire: no new requirements or campaigns may reference it afterwards."""
    return standard_out(await entity_store.retire_standard(db, ctx, standard_id))


@router.delete("/{standard_id}")
async def delete_standard(
    standard_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    await entity_store.delete_standard(db, ctx, standard_id)
    return {"status": "deleted", "id": standard_id}
