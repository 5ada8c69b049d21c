# routers/audit_logs.py - Read access to the audit trail
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from audit import query_audit_logs
from database import get_db_session
from routers.common import _ts, _enum

router = APIRouter(prefix="/api/v1/audit-logs", tags=["Audit"])


@router.get("")
async def list_audit_logs(
    entity_type: Optional[str] = Query(None, alias="entityType"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    action: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db_session),
):
    """Query audit logs, newest first"""
    logs, total = await query_audit_logs(
        db, entity_type=entity_type, entity_id=entity_id, user_id=user_id,
        action=action, limit=limit, offset=offset,
    )
    return {
        "logs": [
            {
                "id": log.id,
                "timestamp": _ts(log.timestamp),
                "user_id": log.user_id,
                "action": _enum(log.action),
                "entity_type": log.entity_type,
                "entity_id": log.entity_id,
                "changes": log.changes or {},
                "request_id": log.request_id,
            }
            for log in logs
        ],
        "count": len(logs),
        "total": total,
        "limit": limit,
        "offset": offset,
    }
