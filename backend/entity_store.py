# entity_store.py - Canonical records for the compliance entity graph
"""
CRUD per entity type over the async session.

Rules enforced here:
- A Requirement needs a resolvable, non-retired Standard.
- A TaskTemplate's requirement ids and document ids must all resolve.
- Updates are partial: only supplied keys change.
- Deleting a Standard/Requirement/TaskTemplate with dependents raises
  ConflictError; link-table rows are removed with their owner.
- Every write is one unit of work (commit or full rollback).
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import select, delete, insert, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import OperationContext, record_audit
from database import bounded, unit_of_work
from errors import ConflictError, ValidationError, not_found
from locks import get_entity_locks
from models import (
    Standard, Requirement, TaskTemplate, Risk, Document, User, Team, TeamMember,
    Campaign, CampaignSelectedRequirement, TaskInstance, AuditAction,
    RequirementStatus, HighLevelCheckType,
    requirement_task_templates, task_template_documents, requirement_risks, utcnow,
)

logger = logging.getLogger("compliance-engine.store")


STANDARD_FIELDS = (
    "name", "short_name", "description", "version", "issuing_body",
    "jurisdiction", "industry", "official_link",
)
REQUIREMENT_FIELDS = (
    "standard_id", "control_id_reference", "requirement_text", "priority", "status",
    "version", "official_link", "effective_date", "expiry_date", "tags",
)
TASK_TEMPLATE_FIELDS = (
    "title", "description", "category", "default_priority", "high_level_check_type",
    "check_type", "target", "parameters", "evidence_types_expected",
)
RISK_FIELDS = (
    "risk_id", "title", "description", "category", "likelihood", "impact",
    "status", "owner_user_id", "tags",
)
DOCUMENT_FIELDS = ("name", "description", "document_type", "source_url", "internal_reference")


@dataclass
class TaskTemplateRecord:
    template: TaskTemplate
    requirement_ids: List[str] = field(default_factory=list)
    document_ids: List[str] = field(default_factory=list)


@dataclass
class RiskRecord:
    risk: Risk
    requirement_ids: List[str] = field(default_factory=list)


# ============================================================
# HELPERS
# ============================================================

def _jsonable(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if hasattr(value, "value"):
        return value.value
    return value


def _require(data: Dict[str, Any], *names: str):
    missing = [n for n in names if data.get(n) is None or (isinstance(data.get(n), str) and not data[n].strip())]
    if missing:
        raise ValidationError(
            f"Missing required field(s): {', '.join(missing)}",
            details={"fields": missing},
        )


def _apply(obj, data: Dict[str, Any], allowed: Iterable[str]) -> Dict[str, List[Any]]:
    """Set supplied fields on obj; return {field: [old, new]} for those that actually changed."""
    changes = {}
    for name in allowed:
        if name not in data:
            continue
        old = getattr(obj, name)
        new = data[name]
        if old != new:
            setattr(obj, name, new)
            changes[name] = [_jsonable(old), _jsonable(new)]
    return changes


def _coerce_enum(data: Dict[str, Any], name: str, enum_cls):
    if data.get(name) is None or isinstance(data[name], enum_cls):
        return
    try:
        data[name] = enum_cls(data[name])
    except ValueError:
        allowed = [e.value for e in enum_cls]
        raise ValidationError(f"Invalid {name}: {data[name]!r} (allowed: {allowed})")


async def get_or_404(db: AsyncSession, model, entity_id: str, label: str = None):
    obj = await bounded(db.get(model, entity_id), f"load {model.__tablename__}")
    if obj is None:
        raise not_found(label or model.__name__, entity_id)
    return obj


async def missing_ids(db: AsyncSession, model, ids: Iterable[str]) -> List[str]:
    wanted = set(ids)
    if not wanted:
        return []
    result = await bounded(db.execute(select(model.id).where(model.id.in_(wanted))))
    found = set(result.scalars().all())
    return sorted(wanted - found)


async def ensure_exist(db: AsyncSession, model, ids: Iterable[str], label: str):
    missing = await missing_ids(db, model, ids)
    if missing:
        raise not_found(label, ", ".join(missing))


async def _count(db: AsyncSession, stmt) -> int:
    result = await bounded(db.execute(stmt))
    return result.scalar() or 0


def _map_integrity(e: IntegrityError, what: str) -> ConflictError:
    return ConflictError(f"{what}: unique constraint violation", code="CE-STORE-005",
                         details={"error": str(e.orig)[:200]})


# ============================================================
# LINK TABLE PRIMITIVES
# ============================================================

async def linked_requirement_ids(db: AsyncSession, task_template_id: str) -> Set[str]:
    stmt = select(requirement_task_templates.c.requirement_id).where(
        requirement_task_templates.c.task_template_id == task_template_id
    )
    result = await bounded(db.execute(stmt))
    return set(result.scalars().all())


async def linked_template_ids(db: AsyncSession, requirement_id: str) -> List[str]:
    stmt = (
        select(requirement_task_templates.c.task_template_id)
        .where(requirement_task_templates.c.requirement_id == requirement_id)
        .order_by(requirement_task_templates.c.task_template_id)
    )
    result = await bounded(db.execute(stmt))
    return list(result.scalars().all())


async def insert_requirement_links(db: AsyncSession, task_template_id: str, requirement_ids: Iterable[str]):
    rows = [{"requirement_id": r, "task_template_id": task_template_id, "created_at": utcnow()}
            for r in sorted(set(requirement_ids))]
    if rows:
        await bounded(db.execute(insert(requirement_task_templates), rows))


async def delete_requirement_links(db: AsyncSession, task_template_id: str, requirement_ids: Iterable[str]):
    ids = set(requirement_ids)
    if ids:
        await bounded(db.execute(
            delete(requirement_task_templates).where(
                requirement_task_templates.c.task_template_id == task_template_id,
                requirement_task_templates.c.requirement_id.in_(ids),
            )
        ))


async def _document_ids(db: AsyncSession, task_template_id: str) -> List[str]:
    stmt = (
        select(task_template_documents.c.document_id)
        .where(task_template_documents.c.task_template_id == task_template_id)
        .order_by(task_template_documents.c.document_id)
    )
    result = await bounded(db.execute(stmt))
    return list(result.scalars().all())


async def _replace_document_links(db: AsyncSession, task_template_id: str, document_ids: Iterable[str]):
    await bounded(db.execute(
        delete(task_template_documents).where(task_template_documents.c.task_template_id == task_template_id)
    ))
    rows = [{"task_template_id": task_template_id, "document_id": d} for d in sorted(set(document_ids))]
    if rows:
        await bounded(db.execute(insert(task_template_documents), rows))


async def _risk_requirement_ids(db: AsyncSession, risk_id: str) -> List[str]:
    stmt = (
        select(requirement_risks.c.requirement_id)
        .where(requirement_risks.c.risk_id == risk_id)
        .order_by(requirement_risks.c.requirement_id)
    )
    result = await bounded(db.execute(stmt))
    return list(result.scalars().all())


async def _replace_risk_links(db: AsyncSession, risk_id: str, requirement_ids: Iterable[str]):
    await bounded(db.execute(delete(requirement_risks).where(requirement_risks.c.risk_id == risk_id)))
    rows = [{"risk_id": risk_id, "requirement_id": r} for r in sorted(set(requirement_ids))]
    if rows:
        await bounded(db.execute(insert(requirement_risks), rows))


# ============================================================
# USERS & TEAMS
# ============================================================

async def create_user(db: AsyncSession, ctx: OperationContext, data: Dict[str, Any]) -> User:
    _require(data, "name", "email")
    existing = await bounded(db.execute(select(User.id).where(User.email == data["email"])))
    if existing.scalar_one_or_none():
        raise ConflictError(f"User with email {data['email']} already exists", code="CE-STORE-005")

    async with unit_of_work(db, "create user"):
        user = User(name=data["name"], email=data["email"], role=data.get("role") or "user")
        db.add(user)
        await bounded(db.flush())
        record_audit(db, ctx, AuditAction.CREATE, "user", user.id, {"email": user.email})
    return user


async def list_users(db: AsyncSession) -> List[User]:
    result = await bounded(db.execute(select(User).order_by(User.name, User.id)))
    return list(result.scalars().all())


async def create_team(db: AsyncSession, ctx: OperationContext, data: Dict[str, Any]) -> Team:
    _require(data, "name")
    member_ids = data.get("member_ids") or []
    await ensure_exist(db, User, member_ids, "User")

    async with unit_of_work(db, "create team"):
        team = Team(name=data["name"], description=data.get("description"))
        db.add(team)
        await bounded(db.flush())
        for user_id in sorted(set(member_ids)):
            db.add(TeamMember(team_id=team.id, user_id=user_id))
        record_audit(db, ctx, AuditAction.CREATE, "team", team.id, {"members": sorted(set(member_ids))})
    return await get_team(db, team.id)


async def get_team(db: AsyncSession, team_id: str) -> Team:
    stmt = (
        select(Team)
        .where(Team.id == team_id)
        .options(selectinload(Team.members))
        .execution_options(populate_existing=True)
    )
    result = await bounded(db.execute(stmt))
    team = result.scalar_one_or_none()
    if team is None:
        raise not_found("Team", team_id)
    return team


async def list_teams(db: AsyncSession) -> List[Team]:
    stmt = select(Team).options(selectinload(Team.members)).order_by(Team.name)
    result = await bounded(db.execute(stmt))
    return list(result.scalars().unique().all())


async def add_team_member(db: AsyncSession, ctx: OperationContext, team_id: str, user_id: str,
                          role_in_team: str = "member") -> Team:
    team = await get_team(db, team_id)
    await get_or_404(db, User, user_id)
    if any(m.user_id == user_id for m in team.members):
        return team
    async with unit_of_work(db, "add team member"):
        db.add(TeamMember(team_id=team_id, user_id=user_id, role_in_team=role_in_team))
        record_audit(db, ctx, AuditAction.UPDATE, "team", team_id, {"member_added": user_id})
    return await get_team(db, team_id)


# ============================================================
# STANDARDS
# ============================================================

async def create_standard(db: AsyncSession, ctx: OperationContext, data: Dict[str, Any]) -> Standard:
    _require(data, "name")
    async with unit_of_work(db, "create standard"):
        standard = Standard(**{k: data.get(k) for k in STANDARD_FIELDS})
        db.add(standard)
        await bounded(db.flush())
        record_audit(db, ctx, AuditAction.CREATE, "standard", standard.id, {"name": standard.name})
    logger.info(f"Standard created: {standard.name} ({standard.id})")
    return standard


async def update_standard(db: AsyncSession, ctx: OperationContext, standard_id: str,
                          data: Dict[str, Any]) -> Standard:
    standard = await get_or_404(db, Standard, standard_id)
    if "name" in data:
        _require(data, "name")
    async with unit_of_work(db, "update standard"):
        changes = _apply(standard, data, STANDARD_FIELDS)
        if changes:
            record_audit(db, ctx, AuditAction.UPDATE, "standard", standard.id, changes)
    return standard


async def list_standards(db: AsyncSession, include_retired: bool = True) -> List[Standard]:
    stmt = select(Standard).order_by(Standard.name, Standard.id)
    if not include_retired:
        stmt = stmt.where(Standard.retired_at.is_(None))
    result = await bounded(db.execute(stmt))
    return list(result.scalars().all())


async def retire_standard(db: AsyncSession, ctx: OperationContext, standard_id: str) -> Standard:
    standard = await get_or_404(db, Standard, standard_id)
    if standard.retired_at is not None:
        return standard
    async with unit_of_work(db, "retire standard"):
        standard.retired_at = utcnow()
        record_audit(db, ctx, AuditAction.RETIRE, "standard", standard.id)
    return standard


async def delete_standard(db: AsyncSession, ctx: OperationContext, standard_id: str):
    standard = await get_or_404(db, Standard, standard_id)
    req_count = await _count(db, select(func.count(Requirement.id)).where(Requirement.standard_id == standard_id))
    camp_count = await _count(db, select(func.count(Campaign.id)).where(Campaign.standard_id == standard_id))
    if req_count or camp_count:
        raise ConflictError(
            "Standard is referenced; retire it instead of deleting",
            code="CE-STORE-002",
            details={"requirements": req_count, "campaigns": camp_count},
        )
    async with unit_of_work(db, "delete standard"):
        await db.delete(standard)
        record_audit(db, ctx, AuditAction.DELETE, "standard", standard_id, {"name": standard.name})


# ============================================================
# REQUIREMENTS
# ============================================================

async def _active_standard(db: AsyncSession, standard_id: str) -> Standard:
    standard = await get_or_404(db, Standard, standard_id)
    if standard.retired_at is not None:
        raise ConflictError(f"Standard {standard_id} is retired", code="CE-STORE-004")
    return standard


async def create_requirement(db: AsyncSession, ctx: OperationContext, data: Dict[str, Any]) -> Requirement:
    _require(data, "standard_id", "control_id_reference", "requirement_text")
    _coerce_enum(data, "status", RequirementStatus)
    await _active_standard(db, data["standard_id"])

    async with unit_of_work(db, "create requirement"):
        values = {k: data.get(k) for k in REQUIREMENT_FIELDS if data.get(k) is not None}
        requirement = Requirement(**values)
        db.add(requirement)
        await bounded(db.flush())
        record_audit(db, ctx, AuditAction.CREATE, "requirement", requirement.id, {
            "standard_id": requirement.standard_id,
            "control_id_reference": requirement.control_id_reference,
        })
    return requirement


async def update_requirement(db: AsyncSession, ctx: OperationContext, requirement_id: str,
                             data: Dict[str, Any]) -> Requirement:
    requirement = await get_or_404(db, Requirement, requirement_id)
    for name in ("standard_id", "control_id_reference", "requirement_text"):
        if name in data:
            _require(data, name)
    _coerce_enum(data, "status", RequirementStatus)

    if "standard_id" in data and data["standard_id"] != requirement.standard_id:
        await _active_standard(db, data["standard_id"])
        selected = await _count(db, select(func.count(CampaignSelectedRequirement.id)).where(
            CampaignSelectedRequirement.requirement_id == requirement_id
        ))
        if selected:
            raise ConflictError(
                "Requirement is part of a campaign selection; it cannot move to another standard",
                code="CE-STORE-002",
            )

    async with unit_of_work(db, "update requirement"):
        changes = _apply(requirement, data, REQUIREMENT_FIELDS)
        if changes:
            record_audit(db, ctx, AuditAction.UPDATE, "requirement", requirement.id, changes)
    return requirement


async def list_requirements(db: AsyncSession, standard_id: Optional[str] = None,
                            status: Optional[str] = None) -> List[Requirement]:
    stmt = select(Requirement).order_by(Requirement.control_id_reference, Requirement.id)
    if standard_id:
        stmt = stmt.where(Requirement.standard_id == standard_id)
    if status:
        data = {"status": status}
        _coerce_enum(data, "status", RequirementStatus)
        stmt = stmt.where(Requirement.status == data["status"])
    result = await bounded(db.execute(stmt))
    return list(result.scalars().all())


async def delete_requirement(db: AsyncSession, ctx: OperationContext, requirement_id: str):
    requirement = await get_or_404(db, Requirement, requirement_id)
    instances = await _count(db, select(func.count(TaskInstance.id)).where(
        TaskInstance.requirement_id == requirement_id
    ))
    selections = await _count(db, select(func.count(CampaignSelectedRequirement.id)).where(
        CampaignSelectedRequirement.requirement_id == requirement_id
    ))
    if instances or selections:
        raise ConflictError(
            "Requirement is referenced by campaigns or task instances",
            code="CE-STORE-002",
            details={"task_instances": instances, "campaign_selections": selections},
        )
    async with unit_of_work(db, "delete requirement"):
        await bounded(db.execute(delete(requirement_task_templates).where(
            requirement_task_templates.c.requirement_id == requirement_id)))
        await bounded(db.execute(delete(requirement_risks).where(
            requirement_risks.c.requirement_id == requirement_id)))
        await db.delete(requirement)
        record_audit(db, ctx, AuditAction.DELETE, "requirement", requirement_id,
                     {"control_id_reference": requirement.control_id_reference})


# ============================================================
# TASK TEMPLATES
# ============================================================

async def get_task_template(db: AsyncSession, task_template_id: str) -> TaskTemplateRecord:
    template = await get_or_404(db, TaskTemplate, task_template_id, "TaskTemplate")
    return TaskTemplateRecord(
        template=template,
        requirement_ids=sorted(await linked_requirement_ids(db, task_template_id)),
        document_ids=await _document_ids(db, task_template_id),
    )


async def list_task_templates(db: AsyncSession) -> List[TaskTemplateRecord]:
    templates = (await bounded(db.execute(select(TaskTemplate)))).scalars().all()
    req_rows = (await bounded(db.execute(select(
        requirement_task_templates.c.task_template_id, requirement_task_templates.c.requirement_id
    )))).all()
    doc_rows = (await bounded(db.execute(select(
        task_template_documents.c.task_template_id, task_template_documents.c.document_id
    )))).all()

    reqs: Dict[str, List[str]] = {}
    for template_id, requirement_id in req_rows:
        reqs.setdefault(template_id, []).append(requirement_id)
    docs: Dict[str, List[str]] = {}
    for template_id, document_id in doc_rows:
        docs.setdefault(template_id, []).append(document_id)

    return [
        TaskTemplateRecord(t, sorted(reqs.get(t.id, [])), sorted(docs.get(t.id, [])))
        for t in templates
    ]


async def create_task_template(db: AsyncSession, ctx: OperationContext, data: Dict[str, Any]) -> TaskTemplateRecord:
    _require(data, "title")
    _coerce_enum(data, "high_level_check_type", HighLevelCheckType)
    requirement_ids = data.get("requirement_ids") or []
    document_ids = data.get("linked_document_ids") or []
    await ensure_exist(db, Requirement, requirement_ids, "Requirement")
    await ensure_exist(db, Document, document_ids, "Document")

    async with unit_of_work(db, "create task template"):
        values = {k: data.get(k) for k in TASK_TEMPLATE_FIELDS if data.get(k) is not None}
        template = TaskTemplate(**values)
        db.add(template)
        await bounded(db.flush())
        await insert_requirement_links(db, template.id, requirement_ids)
        await _replace_document_links(db, template.id, document_ids)
        record_audit(db, ctx, AuditAction.CREATE, "task_template", template.id, {
            "title": template.title,
            "requirement_ids": sorted(set(requirement_ids)),
        })
    logger.info(f"Task template created: {template.title} ({template.id}), "
                f"{len(set(requirement_ids))} requirement link(s)")
    return TaskTemplateRecord(template, sorted(set(requirement_ids)), sorted(set(document_ids)))


async def update_task_template(db: AsyncSession, ctx: OperationContext, task_template_id: str,
                               data: Dict[str, Any]) -> TaskTemplateRecord:
    """Partial update. A supplied requirement_ids replaces the link set; instances are never touched."""
    if "title" in data:
        _require(data, "title")
    _coerce_enum(data, "high_level_check_type", HighLevelCheckType)
    requirement_ids = data.get("requirement_ids")
    document_ids = data.get("linked_document_ids")
    if requirement_ids is not None:
        await ensure_exist(db, Requirement, requirement_ids, "Requirement")
    if document_ids is not None:
        await ensure_exist(db, Document, document_ids, "Document")

    async with get_entity_locks().hold("task_template", task_template_id):
        template = await get_or_404(db, TaskTemplate, task_template_id, "TaskTemplate")
        async with unit_of_work(db, "update task template"):
            changes = _apply(template, data, TASK_TEMPLATE_FIELDS)
            if requirement_ids is not None:
                current = await linked_requirement_ids(db, task_template_id)
                wanted = set(requirement_ids)
                await delete_requirement_links(db, task_template_id, current - wanted)
                await insert_requirement_links(db, task_template_id, wanted - current)
                if current != wanted:
                    changes["requirement_ids"] = [sorted(current), sorted(wanted)]
            if document_ids is not None:
                await _replace_document_links(db, task_template_id, document_ids)
                changes["linked_document_ids"] = sorted(set(document_ids))
            if changes:
                record_audit(db, ctx, AuditAction.UPDATE, "task_template", task_template_id, changes)
    return await get_task_template(db, task_template_id)


async def delete_task_template(db: AsyncSession, ctx: OperationContext, task_template_id: str):
    async with get_entity_locks().hold("task_template", task_template_id):
        template = await get_or_404(db, TaskTemplate, task_template_id, "TaskTemplate")
        instances = await _count(db, select(func.count(TaskInstance.id)).where(
            TaskInstance.task_template_id == task_template_id
        ))
        if instances:
            raise ConflictError(
                "Task template has task instances",
                code="CE-STORE-002",
                details={"task_instances": instances},
            )
        async with unit_of_work(db, "delete task template"):
            await bounded(db.execute(delete(requirement_task_templates).where(
                requirement_task_templates.c.task_template_id == task_template_id)))
            await bounded(db.execute(delete(task_template_documents).where(
                task_template_documents.c.task_template_id == task_template_id)))
            await db.delete(template)
            record_audit(db, ctx, AuditAction.DELETE, "task_template", task_template_id, {"title": template.title})


# ============================================================
# RISKS
# ============================================================

async def get_risk(db: AsyncSession, risk_id: str) -> RiskRecord:
    risk = await get_or_404(db, Risk, risk_id)
    return RiskRecord(risk, await _risk_requirement_ids(db, risk_id))


async def list_risks(db: AsyncSession, status: Optional[str] = None, category: Optional[str] = None,
                     requirement_id: Optional[str] = None) -> List[RiskRecord]:
    stmt = select(Risk).order_by(Risk.risk_id)
    if status:
        stmt = stmt.where(Risk.status == status)
    if category:
        stmt = stmt.where(Risk.category == category)
    if requirement_id:
        stmt = stmt.join(requirement_risks, requirement_risks.c.risk_id == Risk.id).where(
            requirement_risks.c.requirement_id == requirement_id
        )
    risks = (await bounded(db.execute(stmt))).scalars().all()
    return [RiskRecord(r, await _risk_requirement_ids(db, r.id)) for r in risks]


async def create_risk(db: AsyncSession, ctx: OperationContext, data: Dict[str, Any]) -> RiskRecord:
    _require(data, "risk_id", "title")
    requirement_ids = data.get("requirement_ids") or []
    await ensure_exist(db, Requirement, requirement_ids, "Requirement")
    if data.get("owner_user_id"):
        await get_or_404(db, User, data["owner_user_id"])
    taken = await bounded(db.execute(select(Risk.id).where(Risk.risk_id == data["risk_id"])))
    if taken.scalar_one_or_none():
        raise ConflictError(f"Risk {data['risk_id']} already exists", code="CE-STORE-005")

    async with unit_of_work(db, "create risk"):
        values = {k: data.get(k) for k in RISK_FIELDS if data.get(k) is not None}
        risk = Risk(**values)
        db.add(risk)
        await bounded(db.flush())
        await _replace_risk_links(db, risk.id, requirement_ids)
        record_audit(db, ctx, AuditAction.CREATE, "risk", risk.id, {"risk_id": risk.risk_id})
    return RiskRecord(risk, sorted(set(requirement_ids)))


async def update_risk(db: AsyncSession, ctx: OperationContext, risk_id: str, data: Dict[str, Any]) -> RiskRecord:
    risk = await get_or_404(db, Risk, risk_id)
    for name in ("risk_id", "title"):
        if name in data:
            _require(data, name)
    requirement_ids = data.get("requirement_ids")
    if requirement_ids is not None:
        await ensure_exist(db, Requirement, requirement_ids, "Requirement")
    if data.get("owner_user_id"):
        await get_or_404(db, User, data["owner_user_id"])

    try:
        async with unit_of_work(db, "update risk"):
            changes = _apply(risk, data, RISK_FIELDS)
            if requirement_ids is not None:
                await _replace_risk_links(db, risk_id, requirement_ids)
                changes["requirement_ids"] = sorted(set(requirement_ids))
            if changes:
                record_audit(db, ctx, AuditAction.UPDATE, "risk", risk_id, changes)
    except IntegrityError as e:
        raise _map_integrity(e, "update risk")
    return await get_risk(db, risk_id)


async def delete_risk(db: AsyncSession, ctx: OperationContext, risk_id: str):
    risk = await get_or_404(db, Risk, risk_id)
    async with unit_of_work(db, "delete risk"):
        await bounded(db.execute(delete(requirement_risks).where(requirement_risks.c.risk_id == risk_id)))
        await db.delete(risk)
        record_audit(db, ctx, AuditAction.DELETE, "risk", risk_id, {"risk_id": risk.risk_id})


# ============================================================
# DOCUMENTS
# ============================================================

async def list_documents(db: AsyncSession, document_type: Optional[str] = None) -> List[Document]:
    stmt = select(Document).order_by(Document.name, Document.id)
    if document_type:
        stmt = stmt.where(Document.document_type == document_type)
    result = await bounded(db.execute(stmt))
    return list(result.scalars().all())


async def create_document(db: AsyncSession, ctx: OperationContext, data: Dict[str, Any]) -> Document:
    _require(data, "name", "document_type")
    async with unit_of_work(db, "create document"):
        document = Document(**{k: data.get(k) for k in DOCUMENT_FIELDS})
        db.add(document)
        await bounded(db.flush())
        record_audit(db, ctx, AuditAction.CREATE, "document", document.id, {"name": document.name})
    return document


async def update_document(db: AsyncSession, ctx: OperationContext, document_id: str,
                          data: Dict[str, Any]) -> Document:
    document = await get_or_404(db, Document, document_id)
    for name in ("name", "document_type"):
        if name in data:
            _require(data, name)
    async with unit_of_work(db, "update document"):
        changes = _apply(document, data, DOCUMENT_FIELDS)
        if changes:
            record_audit(db, ctx, AuditAction.UPDATE, "document", document_id, changes)
    return document


async def delete_document(db: AsyncSession, ctx: OperationContext, document_id: str):
    document = await get_or_404(db, Document, document_id)
    async with unit_of_work(db, "delete document"):
        await bounded(db.execute(delete(task_template_documents).where(
            task_template_documents.c.document_id == document_id)))
        await db.delete(document)
        record_audit(db, ctx, AuditAction.DELETE, "document", document_id, {"name": document.name})
