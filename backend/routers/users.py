# routers/users.py - Users and teams referenced as owners, assignees and authors
from typing import Optional, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

import entity_store
from audit import OperationContext
from database import get_db_session
from models import User, Team
from routers.common import ApiModel, get_operation_context, _ts

router = APIRouter(prefix="/api/v1", tags=["Users"])


# --- Schemas ---

class UserOut(BaseModel):
    id: str
    name: str
    email: str
    role: str
    created_at: Optional[str] = None


class UserCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    role: str = "user"


class TeamCreate(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    member_ids: List[str] = Field(default_factory=list)


class TeamMemberAdd(ApiModel):
    user_id: str
    role_in_team: str = "member"


# --- Helpers ---

def _user_to_out(u: User) -> UserOut:
    return UserOut(id=u.id, name=u.name, email=u.email, role=u.role or "user", created_at=_ts(u.created_at))


def _team_out(t: Team) -> dict:
    return {
        "id": t.id,
        "name": t.name,
        "description": t.description,
        "members": [
            {"user_id": m.user_id, "role_in_team": m.role_in_team, "added_at": _ts(m.added_at)}
            for m in sorted(t.members, key=lambda m: m.user_id)
        ],
        "created_at": _ts(t.created_at),
    }


# --- Users ---

@router.post("/users", response_model=UserOut, status_code=201)
async def create_user(
    body: UserCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    return _user_to_out(await entity_store.create_user(db, ctx, body.model_dump()))


@router.get("/users", response_model=List[UserOut])
async def list_users(db: AsyncSession = Depends(get_db_session)):
    return [_user_to_out(u) for u in await entity_store.list_users(db)]


@router.get("/users/{user_id}", response_model=UserOut)
async def get_user(user_id: str, db: AsyncSession = Depends(get_db_session)):
    return _user_to_out(await entity_store.get_or_404(db, User, user_id))


# --- Teams ---

@router.post("/teams", status_code=201)
async def create_team(
    body: TeamCreate,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    return _team_out(await entity_store.create_team(db, ctx, body.model_dump()))


@router.get("/teams")
async def list_teams(db: AsyncSession = Depends(get_db_session)):
    return [_team_out(t) for t in await entity_store.list_teams(db)]


@router.get("/teams/{team_id}")
async def get_team(team_id: str, db: AsyncSession = Depends(get_db_session)):
    return _team_out(await entity_store.get_team(db, team_id))


@router.post("/teams/{team_id}/members")
async def add_team_member(
    team_id: str,
    body: TeamMemberAdd,
    ctx: OperationContext = Depends(get_operation_context),
    db: AsyncSession = Depends(get_db_session),
):
    """Adding an existing member is a no-op"""
    team = await entity_store.add_team_member(db, ctx, team_id, body.user_id, body.role_in_team)
    return _team_out(team)
