"""
Documents Router - Policy / procedure / SOP references that task templates point at.
Only metadata is stored; the documents themselves live elsewhere (source_url / internal_reference).
"""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import Field
from typing import Optional

import entity_store
from audit import OperationContext
from database import get_db_session
from models import Document
from routers.common import ApiModel, get_operation_context, _ts

router = APIRouter(prefix="/api/v1/documents", tags=["documents"])


# ── Schemas ──────────────────────────────────────────────────

class DocumentCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=500)
    document_type: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    source_url: Optional[str] = None
    internal_reference: Optional[str] = None

class DocumentUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=500)
    document_type: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = None
    source_url: Optional[str] = None
    internal_reference: Optional[str] = None


def _document_out(d: Document) -> dict:
    return {
        "id": d.id,
        "name": d.name,
        "document_type": d.document_type,
        "description": d.description,
        "source_url": d.source_url,
        "internal_reference": d.internal_reference,
        "created_at": _ts(d.created_at),
        "updated_at": _ts(d.updated_at),
    }


# ── Documents ────────────────────────────────────────────────

@router.post("", status_code=201)
async def create_document(
    body: DocumentCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    return _document_out(await entity_store.create_document(db, ctx, body.model_dump()))


@router.get("")
async def list_documents(
    document_type: Optional[str] = Query(None, alias="documentType"),
    db: AsyncSession = Depends(get_db_session),
):
    return [_document_out(d) for d in await entity_store.list_documents(db, document_type)]


@router.get("/{document_id}")
async def get_document(document_id: str, db: AsyncSession = Depends(get_db_session)):
    return _document_out(await entity_store.get_or_404(db, Document, document_id))


@router.put("/{document_id}")
async def update_document(
    document_id: str,
    body: DocumentUpdate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    document = await entity_store.update_document(db, ctx, document_id, body.model_dump(exclude_unset=True))
    return _document_out(document)


@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Removes the document and its task template links"""
    await entity_store.delete_document(db, ctx, document_id)
    return {"status": "deleted", "id": document_id}
