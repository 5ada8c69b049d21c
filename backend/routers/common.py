# routers/common.py - Request plumbing shared by the API routers
from datetime import date, datetime
from typing import Optional

from fastapi import Header, Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from audit import OperationContext


class ApiModel(BaseModel):
    """Request body base: fields accept both snake_case and camelCase keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def get_operation_context(
    request: Request,
    x_user_id: Optional[str] = Header(None),
    idempotency_key: Optional[str] = Header(None),
) -> OperationContext:
    """Acting user and request identity, passed explicitly into engine calls."""
    return OperationContext(
        user_id=x_user_id,
        request_id=getattr(request.state, "request_id", None),
        idempotency_key=idempotency_key,
    )


def _ts(dt) -> Optional[str]:
    if dt is None:
        return None
    return dt.isoformat() if isinstance(dt, (datetime, date)) else str(dt)


def _enum(value) -> Optional[str]:
    if value is None:
        return None
    return value.value if hasattr(value, "value") else value
