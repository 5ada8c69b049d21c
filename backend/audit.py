# audit.py - Explicit operation context and the audit trail written inside a unit of work
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from errors import ValidationError
from models import AuditLog, AuditAction

logger = logging.getLogger("compliance-engine.audit")


@dataclass(frozen=True)
class OperationContext:
    """Who is acting and on behalf of which request. Passed into every mutating operation."""
    user_id: Optional[str] = None
    request_id: Optional[str] = None
    idempotency_key: Optional[str] = None


SYSTEM_CONTEXT = OperationContext()


def record_audit(
    db: AsyncSession,
    ctx: OperationContext,
    action: AuditAction,
    entity_type: str,
    entity_id: str,
    changes: Optional[Dict[str, Any]] = None,
) -> AuditLog:
    """Stage an audit row; it commits or rolls back with the surrounding operation."""
    entry = AuditLog(
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        user_id=ctx.user_id,
        changes=changes or {},
        request_id=ctx.request_id,
    )
    db.add(entry)
    logger.debug(f"audit {action.value} {entity_type}:{entity_id} by {ctx.user_id or 'system'}")
    return entry


async def query_audit_logs(
    db: AsyncSession,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[List[AuditLog], int]:
    """Newest first. Returns (page, total matching)."""
    filters = []
    if entity_type:
        filters.append(AuditLog.entity_type == entity_type)
    if entity_id:
        filters.append(AuditLog.entity_id == entity_id)
    if user_id:
        filters.append(AuditLog.user_id == user_id)
    if action:
        try:
            filters.append(AuditLog.action == AuditAction(action))
        except ValueError:
            raise ValidationError(f"Invalid audit action: {action!r}")

    total = (await db.execute(select(func.count(AuditLog.id)).where(*filters))).scalar() or 0
    stmt = (
        select(AuditLog)
        .where(*filters)
        .order_by(AuditLog.timestamp.desc(), AuditLog.id)
        .limit(limit)
        .offset(offset)
    )
    result = await db.execute(stmt)
    return list(result.scalars().all()), total
