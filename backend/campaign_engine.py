# campaign_engine.py - Campaign creation and exactly-once task instantiation
"""
A campaign is an audit cycle against one standard. Creating one:

1. validates the standard and that every selected requirement belongs to it;
2. persists the campaign with its frozen requirement selection;
3. for every applicable requirement, resolves the task templates linked to
   it *now* and creates one task instance per (requirement, template) pair;
4. activates the campaign when it ends up with at least one instance.

All of it happens in one unit of work under the campaign's lock. With an
idempotency key the campaign id is derived from the key. A retried or
concurrent duplicate call lands on the committed campaign and reports its
instances without creating any; a key that lost an insert race in another
process is handled the same way.

Campaign status is derived on read (derive_campaign_status), never stored.
"""

import hashlib
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import OperationContext, record_audit
from database import bounded, unit_of_work
from entity_store import get_or_404, linked_template_ids, _require, _apply, _count
from errors import ConflictError, ValidationError, not_found
from locks import get_entity_locks
from models import (
    Campaign, CampaignSelectedRequirement, CampaignStatus, Requirement, Standard,
    TaskInstance, TaskInstanceHistory, TaskInstanceStatus, TaskTemplate, User,
    AuditAction, utcnow,
)
from telemetry import get_tracer

logger = logging.getLogger("compliance-engine.campaigns")
tracer = get_tracer("compliance-engine.campaigns")

# Campaign ids derived from idempotency keys live in their own uuid5 namespace
CAMPAIGN_ID_NAMESPACE = uuid.UUID("6f1c5a52-9a3e-4d7b-8c0e-2b9f1d4e7a31")

CAMPAIGN_EDITABLE_FIELDS = ("name", "description", "start_date", "end_date")


@dataclass
class RequirementSelection:
    requirement_id: str
    is_applicable: bool = True


@dataclass
class InstantiationSummary:
    """What a create_campaign call did. Zero-template requirements are warnings, not errors."""
    campaign_id: str
    instances_created: int = 0
    instances_existing: int = 0
    created_instance_ids: List[str] = field(default_factory=list)
    requirement_ids_with_no_templates: List[str] = field(default_factory=list)
    requirement_ids_excluded: List[str] = field(default_factory=list)
    replayed: bool = False  # True when the campaign already existed for this idempotency key

    @property
    def requirements_with_no_templates(self) -> int:
        return len(self.requirement_ids_with_no_templates)

    @property
    def requirements_excluded(self) -> int:
        return len(self.requirement_ids_excluded)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaign_id": self.campaign_id,
            "instances_created": self.instances_created,
            "instances_existing": self.instances_existing,
            "created_instance_ids": self.created_instance_ids,
            "requirements_with_no_templates": self.requirements_with_no_templates,
            "requirement_ids_with_no_templates": self.requirement_ids_with_no_templates,
            "requirements_excluded": self.requirements_excluded,
            "requirement_ids_excluded": self.requirement_ids_excluded,
            "replayed": self.replayed,
        }


@dataclass
class CampaignRecord:
    campaign: Campaign
    status: CampaignStatus
    standard_name: Optional[str] = None
    status_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def instance_count(self) -> int:
        return sum(self.status_counts.values())


# ============================================================
# STATUS DERIVATION
# ============================================================

def derive_campaign_status(campaign: Campaign, status_counts: Dict[str, int],
                           today: Optional[date] = None) -> CampaignStatus:
    """
    Draft until activated and until its start date has been reached;
    Completed when an operator closed it or every instance is Closed/Failed;
    Active otherwise. Passing the end date alone does not complete a campaign.
    """
    if campaign.closed_at is not None:
        return CampaignStatus.COMPLETED
    if campaign.activated_at is None:
        return CampaignStatus.DRAFT
    today = today or utcnow().date()
    if campaign.start_date is not None and today < campaign.start_date:
        return CampaignStatus.DRAFT
    total = sum(status_counts.values())
    terminal = sum(
        count for status, count in status_counts.items()
        if TaskInstanceStatus(status).is_terminal
    )
    if total and terminal == total:
        return CampaignStatus.COMPLETED
    return CampaignStatus.ACTIVE


async def status_counts_by_campaign(db: AsyncSession, campaign_ids: List[str]) -> Dict[str, Dict[str, int]]:
    if not campaign_ids:
        return {}
    stmt = (
        select(TaskInstance.campaign_id, TaskInstance.status, func.count(TaskInstance.id))
        .where(TaskInstance.campaign_id.in_(campaign_ids))
        .group_by(TaskInstance.campaign_id, TaskInstance.status)
    )
    rows = (await bounded(db.execute(stmt))).all()
    counts: Dict[str, Dict[str, int]] = {cid: {} for cid in campaign_ids}
    for campaign_id, status, count in rows:
        key = status.value if isinstance(status, TaskInstanceStatus) else status
        counts[campaign_id][key] = count
    return counts


# ============================================================
# VALIDATION
# ============================================================

def _normalise_selections(raw: List[Any]) -> List[RequirementSelection]:
    selections: Dict[str, RequirementSelection] = {}
    for item in raw or []:
        if isinstance(item, RequirementSelection):
            sel = item
        else:
            requirement_id = item.get("requirement_id")
            if not requirement_id:
                raise ValidationError("Every selected requirement needs a requirement_id")
            sel = RequirementSelection(requirement_id, bool(item.get("is_applicable", True)))
        previous = selections.get(sel.requirement_id)
        if previous is not None and previous.is_applicable != sel.is_applicable:
            raise ValidationError(
                f"Requirement {sel.requirement_id} selected twice with different applicability",
                details={"requirement_id": sel.requirement_id},
            )
        selections[sel.requirement_id] = sel
    return [selections[k] for k in sorted(selections)]


def _selection_fingerprint(standard_id: str, selections: List[RequirementSelection]) -> str:
    payload = standard_id + "|" + ",".join(
        f"{s.requirement_id}:{int(s.is_applicable)}" for s in selections
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def campaign_id_for_key(idempotency_key: str) -> str:
    return str(uuid.uuid5(CAMPAIGN_ID_NAMESPACE, idempotency_key))


def _due_date(end_date: Optional[date]) -> Optional[datetime]:
    if end_date is None:
        return None
    return datetime.combine(end_date, time.min, tzinfo=timezone.utc)


async def _validate_definition(db: AsyncSession, data: Dict[str, Any]) -> Tuple[Standard, List[RequirementSelection]]:
    _require(data, "standard_id", "name")
    start, end = data.get("start_date"), data.get("end_date")
    if start and end and end < start:
        raise ValidationError("end_date must not be before start_date")

    standard = await get_or_404(db, Standard, data["standard_id"])
    if standard.retired_at is not None:
        raise ConflictError(f"Standard {standard.id} is retired", code="CE-STORE-004")

    selections = _normalise_selections(data.get("selected_requirements") or [])
    if selections:
        ids = [s.requirement_id for s in selections]
        rows = (await bounded(db.execute(
            select(Requirement.id, Requirement.standard_id).where(Requirement.id.in_(ids))
        ))).all()
        owners = {rid: sid for rid, sid in rows}
        missing = [rid for rid in ids if rid not in owners]
        if missing:
            raise not_found("Requirement", ", ".join(missing))
        foreign = [rid for rid in ids if owners[rid] != standard.id]
        if foreign:
            raise ValidationError(
                "Selected requirements do not belong to the campaign standard",
                code="CE-CAMP-001",
                details={"requirement_ids": foreign, "standard_id": standard.id},
            )
    return standard, selections


# ============================================================
# INSTANTIATION
# ============================================================

def _snapshot_instance(campaign: Campaign, selection: CampaignSelectedRequirement,
                       template: TaskTemplate) -> TaskInstance:
    """Copy template fields at instantiation; later template edits do not reach this row."""
    return TaskInstance(
        campaign_id=campaign.id,
        requirement_id=selection.requirement_id,
        task_template_id=template.id,
        campaign_selected_requirement_id=selection.id,
        title=template.title,
        description=template.description,
        category=template.category,
        priority=template.default_priority,
        check_type=template.check_type,
        target=template.target,
        parameters=dict(template.parameters or {}),
        evidence_types_expected=list(template.evidence_types_expected or []),
        status=TaskInstanceStatus.OPEN,
        due_date=_due_date(campaign.end_date),
    )


async def _instantiate(db: AsyncSession, campaign: Campaign,
                       selections: List[CampaignSelectedRequirement],
                       summary: InstantiationSummary):
    """One instance per (applicable requirement, template linked to it now)."""
    plan: List[Tuple[CampaignSelectedRequirement, List[str]]] = []
    template_ids = set()
    for selection in sorted(selections, key=lambda s: s.requirement_id):
        if not selection.is_applicable:
            summary.requirement_ids_excluded.append(selection.requirement_id)
            continue
        linked = await linked_template_ids(db, selection.requirement_id)
        if not linked:
            summary.requirement_ids_with_no_templates.append(selection.requirement_id)
            continue
        plan.append((selection, linked))
        template_ids.update(linked)

    templates = {}
    if template_ids:
        result = await bounded(db.execute(select(TaskTemplate).where(TaskTemplate.id.in_(template_ids))))
        templates = {t.id: t for t in result.scalars().all()}

    for selection, linked in plan:
        for template_id in linked:
            # uq_task_instance_triple rejects a second row for the same pair
            instance = _snapshot_instance(campaign, selection, templates[template_id])
            db.add(instance)
            await bounded(db.flush())
            db.add(TaskInstanceHistory(
                task_instance_id=instance.id, action="created",
                new_value=TaskInstanceStatus.OPEN.value,
            ))
            summary.instances_created += 1
            summary.created_instance_ids.append(instance.id)


async def _load_campaign(db: AsyncSession, campaign_id: str) -> Optional[Campaign]:
    stmt = (
        select(Campaign)
        .where(Campaign.id == campaign_id)
        .options(selectinload(Campaign.selections))
        .execution_options(populate_existing=True)
    )
    return (await bounded(db.execute(stmt))).scalar_one_or_none()


async def _replay(db: AsyncSession, campaign: Campaign, standard_id: str,
                  selections: List[RequirementSelection],
                  summary: InstantiationSummary) -> Tuple[CampaignRecord, InstantiationSummary]:
    """
    A committed campaign is complete: report what it holds and create nothing.
    Templates linked since the first call stay out of it.
    """
    stored_selections = [
        RequirementSelection(s.requirement_id, s.is_applicable) for s in campaign.selections
    ]
    if (campaign.standard_id != standard_id
            or _selection_fingerprint(campaign.standard_id, stored_selections)
            != _selection_fingerprint(standard_id, selections)):
        raise ConflictError(
            "Idempotency key already used for a different campaign definition",
            code="CE-CAMP-004",
            details={"campaign_id": campaign.id},
        )

    rows = (await bounded(db.execute(
        select(TaskInstance.requirement_id, func.count(TaskInstance.id))
        .where(TaskInstance.campaign_id == campaign.id)
        .group_by(TaskInstance.requirement_id)
    ))).all()
    per_requirement = {requirement_id: count for requirement_id, count in rows}

    summary.replayed = True
    for selection in sorted(campaign.selections, key=lambda s: s.requirement_id):
        if not selection.is_applicable:
            summary.requirement_ids_excluded.append(selection.requirement_id)
        elif not per_requirement.get(selection.requirement_id):
            summary.requirement_ids_with_no_templates.append(selection.requirement_id)
    summary.instances_existing = sum(per_requirement.values())

    logger.info(
        f"Campaign replayed: {campaign.name} ({campaign.id}) existing={summary.instances_existing}"
    )
    return await get_campaign(db, campaign.id), summary


async def create_campaign(db: AsyncSession, ctx: OperationContext,
                          data: Dict[str, Any]) -> Tuple[CampaignRecord, InstantiationSummary]:
    """Create a campaign and its task instances, all or nothing. Safe to retry with an idempotency key."""
    standard, selections = await _validate_definition(db, data)
    standard_id = standard.id
    idempotency_key = data.get("idempotency_key") or ctx.idempotency_key
    campaign_id = campaign_id_for_key(idempotency_key) if idempotency_key else str(uuid.uuid4())

    async with get_entity_locks().hold("campaign", campaign_id):
        summary = InstantiationSummary(campaign_id=campaign_id)
        campaign = await _load_campaign(db, campaign_id)
        if campaign is not None:
            return await _replay(db, campaign, standard_id, selections, summary)

        try:
            async with unit_of_work(db, "create campaign"):
                campaign = Campaign(
                    id=campaign_id,
                    name=data["name"],
                    description=data.get("description"),
                    standard_id=standard.id,
                    start_date=data.get("start_date"),
                    end_date=data.get("end_date"),
                    idempotency_key=idempotency_key,
                    created_by=ctx.user_id,
                )
                db.add(campaign)
                await bounded(db.flush())
                stored = []
                for sel in selections:
                    row = CampaignSelectedRequirement(
                        campaign_id=campaign.id,
                        requirement_id=sel.requirement_id,
                        is_applicable=sel.is_applicable,
                    )
                    db.add(row)
                    stored.append(row)
                await bounded(db.flush())
                record_audit(db, ctx, AuditAction.CREATE, "campaign", campaign.id, {
                    "name": campaign.name,
                    "standard_id": standard.id,
                    "selected_requirements": [
                        {"requirement_id": s.requirement_id, "is_applicable": s.is_applicable}
                        for s in selections
                    ],
                })

                with tracer.start_as_current_span("campaign.instantiate") as span:
                    await _instantiate(db, campaign, stored, summary)
                    span.set_attribute("campaign.id", campaign.id)
                    span.set_attribute("campaign.instances_created", summary.instances_created)

                if summary.instances_created:
                    campaign.activated_at = utcnow()
                    record_audit(db, ctx, AuditAction.INSTANTIATE, "campaign", campaign.id, {
                        "instances_created": summary.instances_created,
                    })
        except IntegrityError as e:
            if idempotency_key:
                # Another process may have committed the same keyed campaign first
                existing = await _load_campaign(db, campaign_id)
                if existing is not None:
                    logger.info(f"Campaign {campaign_id} was created concurrently; replaying")
                    return await _replay(db, existing, standard_id, selections,
                                         InstantiationSummary(campaign_id=campaign_id))
            logger.warning(f"Instantiation for campaign {campaign_id} rolled back: {e.orig}")
            raise ConflictError(
                "Duplicate task instance detected; campaign creation rolled back",
                code="CE-CAMP-002",
                details={"campaign_id": campaign_id},
            )

    if summary.requirement_ids_with_no_templates:
        logger.warning(
            f"Campaign {campaign_id}: {summary.requirements_with_no_templates} applicable "
            f"requirement(s) have no linked task templates"
        )
    logger.info(
        f"Campaign created: {campaign.name} ({campaign_id}) "
        f"created={summary.instances_created} excluded={summary.requirements_excluded}"
    )
    return await get_campaign(db, campaign_id), summary


# ============================================================
# READS
# ============================================================

async def get_campaign(db: AsyncSession, campaign_id: str) -> CampaignRecord:
    campaign = await get_or_404(db, Campaign, campaign_id)
    standard = await bounded(db.get(Standard, campaign.standard_id))
    counts = (await status_counts_by_campaign(db, [campaign_id]))[campaign_id]
    return CampaignRecord(
        campaign=campaign,
        status=derive_campaign_status(campaign, counts),
        standard_name=standard.name if standard else None,
        status_counts=counts,
    )


async def list_campaigns(db: AsyncSession, status: Optional[str] = None,
                         standard_id: Optional[str] = None) -> List[CampaignRecord]:
    wanted = None
    if status:
        try:
            wanted = CampaignStatus(status)
        except ValueError:
            raise ValidationError(f"Invalid campaign status: {status!r}")

    stmt = (
        select(Campaign, Standard.name)
        .join(Standard, Standard.id == Campaign.standard_id)
        .order_by(Campaign.created_at.desc(), Campaign.id)
    )
    if standard_id:
        stmt = stmt.where(Campaign.standard_id == standard_id)
    rows = (await bounded(db.execute(stmt))).all()
    counts = await status_counts_by_campaign(db, [c.id for c, _ in rows])

    records = []
    for campaign, standard_name in rows:
        derived = derive_campaign_status(campaign, counts[campaign.id])
        if wanted is not None and derived != wanted:
            continue
        records.append(CampaignRecord(campaign, derived, standard_name, counts[campaign.id]))
    return records


async def get_selected_requirements(db: AsyncSession, campaign_id: str) -> List[Tuple[CampaignSelectedRequirement, Requirement]]:
    await get_or_404(db, Campaign, campaign_id)
    stmt = (
        select(CampaignSelectedRequirement, Requirement)
        .join(Requirement, Requirement.id == CampaignSelectedRequirement.requirement_id)
        .where(CampaignSelectedRequirement.campaign_id == campaign_id)
        .order_by(Requirement.control_id_reference, Requirement.id)
    )
    return [(sel, req) for sel, req in (await bounded(db.execute(stmt))).all()]


# ============================================================
# OPERATOR ACTIONS
# ============================================================

async def update_campaign(db: AsyncSession, ctx: OperationContext, campaign_id: str,
                          data: Dict[str, Any]) -> CampaignRecord:
    """Name, description and dates only. Scope changes need a new campaign."""
    if data.get("selected_requirements") is not None or "standard_id" in data:
        raise ConflictError(
            "Campaign scope is frozen at creation; create a new campaign to change it",
            code="CE-CAMP-003",
        )
    if "name" in data:
        _require(data, "name")

    async with get_entity_locks().hold("campaign", campaign_id):
        campaign = await get_or_404(db, Campaign, campaign_id)
        start = data.get("start_date", campaign.start_date)
        end = data.get("end_date", campaign.end_date)
        if start and end and end < start:
            raise ValidationError("end_date must not be before start_date")
        async with unit_of_work(db, "update campaign"):
            changes = _apply(campaign, data, CAMPAIGN_EDITABLE_FIELDS)
            if changes:
                record_audit(db, ctx, AuditAction.UPDATE, "campaign", campaign_id, changes)
    return await get_campaign(db, campaign_id)


async def activate_campaign(db: AsyncSession, ctx: OperationContext, campaign_id: str) -> CampaignRecord:
    async with get_entity_locks().hold("campaign", campaign_id):
        campaign = await get_or_404(db, Campaign, campaign_id)
        if campaign.activated_at is None and campaign.closed_at is None:
            async with unit_of_work(db, "activate campaign"):
                campaign.activated_at = utcnow()
                record_audit(db, ctx, AuditAction.ACTIVATE, "campaign", campaign_id)
            logger.info(f"Campaign activated by operator: {campaign_id}")
    return await get_campaign(db, campaign_id)


async def close_campaign(db: AsyncSession, ctx: OperationContext, campaign_id: str) -> CampaignRecord:
    async with get_entity_locks().hold("campaign", campaign_id):
        campaign = await get_or_404(db, Campaign, campaign_id)
        if campaign.closed_at is None:
            async with unit_of_work(db, "close campaign"):
                campaign.closed_at = utcnow()
                record_audit(db, ctx, AuditAction.CLOSE, "campaign", campaign_id)
            logger.info(f"Campaign closed by operator: {campaign_id}")
    return await get_campaign(db, campaign_id)


async def delete_campaign(db: AsyncSession, ctx: OperationContext, campaign_id: str):
    async with get_entity_locks().hold("campaign", campaign_id):
        campaign = await get_or_404(db, Campaign, campaign_id)
        instances = await _count(db, select(func.count(TaskInstance.id)).where(
            TaskInstance.campaign_id == campaign_id
        ))
        if instances:
            raise ConflictError(
                "Campaign has task instances and cannot be deleted",
                code="CE-CAMP-006",
                details={"task_instances": instances},
            )
        async with unit_of_work(db, "delete campaign"):
            await db.delete(campaign)
            record_audit(db, ctx, AuditAction.DELETE, "campaign", campaign_id, {"name": campaign.name})


async def create_ad_hoc_instance(db: AsyncSession, ctx: OperationContext, campaign_id: str,
                                 data: Dict[str, Any]) -> TaskInstance:
    """An instance with no template, for a requirement the campaign marked applicable."""
    _require(data, "requirement_id", "title")
    for name in ("owner_user_id", "assignee_user_id"):
        if data.get(name):
            await get_or_404(db, User, data[name])

    async with get_entity_locks().hold("campaign", campaign_id):
        campaign = await get_or_404(db, Campaign, campaign_id)
        selection = (await bounded(db.execute(
            select(CampaignSelectedRequirement).where(
                CampaignSelectedRequirement.campaign_id == campaign_id,
                CampaignSelectedRequirement.requirement_id == data["requirement_id"],
            )
        ))).scalar_one_or_none()
        if selection is None or not selection.is_applicable:
            raise ValidationError(
                f"Requirement {data['requirement_id']} is not applicable in campaign {campaign_id}",
                code="CE-CAMP-005",
            )

        async with unit_of_work(db, "create ad hoc task instance"):
            instance = TaskInstance(
                campaign_id=campaign.id,
                requirement_id=selection.requirement_id,
                task_template_id=None,
                campaign_selected_requirement_id=selection.id,
                title=data["title"],
                description=data.get("description"),
                category=data.get("category"),
                priority=data.get("priority"),
                evidence_types_expected=list(data.get("evidence_types_expected") or []),
                status=TaskInstanceStatus.OPEN,
                owner_user_id=data.get("owner_user_id"),
                assignee_user_id=data.get("assignee_user_id"),
                due_date=data.get("due_date") or _due_date(campaign.end_date),
            )
            db.add(instance)
            await bounded(db.flush())
            db.add(TaskInstanceHistory(
                task_instance_id=instance.id, user_id=ctx.user_id, action="created",
                new_value=TaskInstanceStatus.OPEN.value,
            ))
            if campaign.activated_at is None and campaign.closed_at is None:
                campaign.activated_at = utcnow()
            record_audit(db, ctx, AuditAction.CREATE, "task_instance", instance.id, {
                "campaign_id": campaign.id, "requirement_id": selection.requirement_id, "ad_hoc": True,
            })
    return instance
