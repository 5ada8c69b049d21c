# task_lifecycle.py - Task instance status machine, comments, evidence and overdue computation
"""
Statuses: Open, In Progress, Pending Review, Closed, Failed.
Closed and Failed are terminal.

- Moving to the current status is a successful no-op (nothing is written).
- Any non-terminal status may move to any other status.
- A terminal status may move back to a non-terminal one (reopen).
- Closed <-> Failed directly is rejected; reopen first.

Comments and evidence are append-only. A repeated post carrying the same
idempotency key returns the record created the first time.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from audit import OperationContext, record_audit
from database import bounded, unit_of_work
from entity_store import get_or_404, ensure_exist, _jsonable
from errors import ConflictError, ValidationError
from locks import get_entity_locks
from models import (
    Campaign, Comment, Evidence, Requirement, TaskInstance, TaskInstanceHistory,
    TaskInstanceStatus, TaskTemplate, User, AuditAction, as_utc, utcnow,
)

logger = logging.getLogger("compliance-engine.lifecycle")

ASSIGNABLE_FIELDS = ("owner_user_id", "assignee_user_id", "due_date")


@dataclass
class TransitionResult:
    instance: TaskInstance
    previous_status: TaskInstanceStatus
    status: TaskInstanceStatus
    changed: bool
    reopened: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_instance_id": self.instance.id,
            "previous_status": self.previous_status.value,
            "status": self.status.value,
            "changed": self.changed,
            "reopened": self.reopened,
        }


@dataclass
class InstanceDetail:
    instance: TaskInstance
    campaign: Campaign
    requirement: Requirement
    template: Optional[TaskTemplate]
    comments: List[Comment] = field(default_factory=list)
    evidence: List[Evidence] = field(default_factory=list)
    history: List[TaskInstanceHistory] = field(default_factory=list)
    is_overdue: bool = False


def parse_status(value) -> TaskInstanceStatus:
    if isinstance(value, TaskInstanceStatus):
        return value
    try:
        return TaskInstanceStatus(value)
    except ValueError:
        allowed = [s.value for s in TaskInstanceStatus]
        raise ValidationError(
            f"Invalid task status: {value!r}",
            code="CE-TASK-001",
            details={"allowed": allowed},
        )


def is_overdue(due_date: Optional[datetime], status, now: Optional[datetime] = None) -> bool:
    """Past due, not due today, and not Closed."""
    if due_date is None:
        return False
    if parse_status(status) == TaskInstanceStatus.CLOSED:
        return False
    due = as_utc(due_date)
    now = as_utc(now) if now else utcnow()
    return due < now and due.date() != now.date()


def _history(db: AsyncSession, ctx: OperationContext, instance_id: str, action: str,
             field_name: str = None, old=None, new=None):
    db.add(TaskInstanceHistory(
        task_instance_id=instance_id,
        user_id=ctx.user_id,
        action=action,
        field_name=field_name,
        old_value=None if old is None else str(_jsonable(old)),
        new_value=None if new is None else str(_jsonable(new)),
    ))


# ============================================================
# STATUS
# ============================================================

def _check_transition(current: TaskInstanceStatus, target: TaskInstanceStatus):
    if current.is_terminal and target.is_terminal and current != target:
        raise ConflictError(
            f"Cannot move a {current.value} task directly to {target.value}; reopen it first",
            code="CE-TASK-002",
            details={"from": current.value, "to": target.value},
        )


def _apply_status(db: AsyncSession, ctx: OperationContext, instance: TaskInstance,
                  target: TaskInstanceStatus) -> TransitionResult:
    """Stage a checked status change on a locked instance; the caller's unit of work commits it."""
    current = instance.status
    reopened = current.is_terminal and not target.is_terminal
    instance.status = target
    if target == TaskInstanceStatus.IN_PROGRESS and instance.started_at is None:
        instance.started_at = utcnow()
    if target.is_terminal:
        instance.completed_at = utcnow()
    elif reopened:
        instance.completed_at = None
    _history(db, ctx, instance.id, "status_changed", "status", current.value, target.value)
    record_audit(db, ctx, AuditAction.STATUS_CHANGE, "task_instance", instance.id,
                 {"status": [current.value, target.value]})
    return TransitionResult(instance, current, target, changed=True, reopened=reopened)


def _log_transition(transition: TransitionResult):
    if transition is not None and transition.changed:
        logger.info(f"Task instance {transition.instance.id}: {transition.previous_status.value} -> "
                    f"{transition.status.value}" + (" (reopened)" if transition.reopened else ""))


async def update_status(db: AsyncSession, ctx: OperationContext, instance_id: str, new_status) -> TransitionResult:
    target = parse_status(new_status)

    async with get_entity_locks().hold("task_instance", instance_id):
        instance = await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
        if instance.status == target:
            return TransitionResult(instance, target, target, changed=False)
        _check_transition(instance.status, target)
        async with unit_of_work(db, "update task status"):
            transition = _apply_status(db, ctx, instance, target)

    _log_transition(transition)
    return transition


async def update_instance(db: AsyncSession, ctx: OperationContext, instance_id: str,
                          data: Dict[str, Any]) -> Tuple[TaskInstance, Optional[TransitionResult]]:
    """
    Partial update of owner, assignee, due date and (optionally) status.
    Status and field changes commit together or not at all.
    """
    target = parse_status(data["status"]) if data.get("status") is not None else None
    for name in ("owner_user_id", "assignee_user_id"):
        if data.get(name):
            await get_or_404(db, User, data[name])

    async with get_entity_locks().hold("task_instance", instance_id):
        instance = await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
        changes = {}
        for name in ASSIGNABLE_FIELDS:
            if name not in data:
                continue
            old, new = getattr(instance, name), data[name]
            if name == "due_date":
                old, new = as_utc(old), as_utc(new)
            if old != new:
                changes[name] = (old, new)

        transition = None
        if target is not None and target == instance.status:
            transition = TransitionResult(instance, target, target, changed=False)
            target = None
        elif target is not None:
            _check_transition(instance.status, target)
        if target is not None or changes:
            async with unit_of_work(db, "update task instance"):
                if target is not None:
                    transition = _apply_status(db, ctx, instance, target)
                for name, (old, new) in changes.items():
                    setattr(instance, name, new)
                    action = "assigned" if name != "due_date" else "rescheduled"
                    _history(db, ctx, instance.id, action, name, old, new)
                if changes:
                    record_audit(db, ctx, AuditAction.UPDATE, "task_instance", instance.id, {
                        name: [_jsonable(old), _jsonable(new)] for name, (old, new) in changes.items()
                    })

    _log_transition(transition)
    return instance, transition


# ============================================================
# COMMENTS & EVIDENCE
# ============================================================

async def _existing_by_key(db: AsyncSession, model, instance_id: str, idempotency_key: Optional[str]):
    if not idempotency_key:
        return None
    result = await bounded(db.execute(
        select(model).where(model.task_instance_id == instance_id, model.idempotency_key == idempotency_key)
    ))
    return result.scalar_one_or_none()


async def add_comment(db: AsyncSession, ctx: OperationContext, instance_id: str,
                      text: str) -> Tuple[Comment, bool]:
    """Append a comment. Returns (comment, created); created is False for an idempotent replay."""
    if not ctx.user_id:
        raise ValidationError("A comment needs an author (X-User-ID)")
    if not text or not text.strip():
        raise ValidationError("Comment text must not be empty")
    await get_or_404(db, User, ctx.user_id)

    async with get_entity_locks().hold("task_instance", instance_id):
        await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
        existing = await _existing_by_key(db, Comment, instance_id, ctx.idempotency_key)
        if existing is not None:
            return existing, False

        try:
            async with unit_of_work(db, "add comment"):
                comment = Comment(
                    task_instance_id=instance_id,
                    user_id=ctx.user_id,
                    text=text,
                    idempotency_key=ctx.idempotency_key,
                )
                db.add(comment)
                await bounded(db.flush())
                _history(db, ctx, instance_id, "commented", new=comment.id)
                record_audit(db, ctx, AuditAction.COMMENT, "task_instance", instance_id, {"comment_id": comment.id})
        except IntegrityError:
            raise ConflictError("Comment with this idempotency key is already being stored")
    return comment, True


async def add_evidence(db: AsyncSession, ctx: OperationContext, instance_id: str,
                       data: Dict[str, Any]) -> Tuple[Evidence, bool]:
    if not any(data.get(k) for k in ("file_ref", "url", "text")):
        raise ValidationError("Evidence needs at least one of file_ref, url or text")
    if ctx.user_id:
        await get_or_404(db, User, ctx.user_id)

    async with get_entity_locks().hold("task_instance", instance_id):
        await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
        existing = await _existing_by_key(db, Evidence, instance_id, ctx.idempotency_key)
        if existing is not None:
            return existing, False

        try:
            async with unit_of_work(db, "add evidence"):
                evidence = Evidence(
                    task_instance_id=instance_id,
                    uploader_user_id=ctx.user_id,
                    file_ref=data.get("file_ref"),
                    file_name=data.get("file_name"),
                    mime_type=data.get("mime_type"),
                    file_size=data.get("file_size"),
                    url=data.get("url"),
                    text=data.get("text"),
                    description=data.get("description"),
                    idempotency_key=ctx.idempotency_key,
                )
                db.add(evidence)
                await bounded(db.flush())
                _history(db, ctx, instance_id, "evidence_added", new=evidence.id)
                record_audit(db, ctx, AuditAction.EVIDENCE, "task_instance", instance_id, {"evidence_id": evidence.id})
        except IntegrityError:
            raise ConflictError("Evidence with this idempotency key is already being stored")
    logger.info(f"Evidence {evidence.id} attached to task instance {instance_id}")
    return evidence, True


async def copy_evidence(db: AsyncSession, ctx: OperationContext, instance_id: str,
                        source_evidence_ids: Iterable[str]) -> List[Evidence]:
    """Duplicate evidence records onto this instance. All sources must exist or nothing is copied."""
    source_ids = list(dict.fromkeys(source_evidence_ids))
    if not source_ids:
        raise ValidationError("source_evidence_ids must not be empty")

    async with get_entity_locks().hold("task_instance", instance_id):
        await get_or_404(db, TaskInstance, instance_id, "TaskInstance")
        await ensure_exist(db, Evidence, source_ids, "Evidence")
        result = await bounded(db.execute(select(Evidence).where(Evidence.id.in_(source_ids))))
        sources = {e.id: e for e in result.scalars().all()}

        copies = []
        async with unit_of_work(db, "copy evidence"):
            for source_id in source_ids:
                src = sources[source_id]
                copy = Evidence(
                    task_instance_id=instance_id,
                    uploader_user_id=ctx.user_id or src.uploader_user_id,
                    file_ref=src.file_ref,
                    file_name=src.file_name,
                    mime_type=src.mime_type,
                    file_size=src.file_size,
                    url=src.url,
                    text=src.text,
                    description=src.description,
                    copied_from_id=src.id,
                )
                db.add(copy)
                copies.append(copy)
            await bounded(db.flush())
            for copy in copies:
                _history(db, ctx, instance_id, "evidence_copied", old=copy.copied_from_id, new=copy.id)
            record_audit(db, ctx, AuditAction.EVIDENCE, "task_instance", instance_id, {
                "copied_from": source_ids, "evidence_ids": [c.id for c in copies],
            })
    logger.info(f"Copied {len(copies)} evidence record(s) onto task instance {instance_id}")
    return copies


# ============================================================
# READS
# ============================================================

async def get_instance_detail(db: AsyncSession, instance_id: str, now: Optional[datetime] = None) -> InstanceDetail:
    stmt = (
        select(TaskInstance)
        .where(TaskInstance.id == instance_id)
        .options(
            selectinload(TaskInstance.comments),
            selectinload(TaskInstance.evidence),
            selectinload(TaskInstance.history),
        )
        .execution_options(populate_existing=True)
    )
    instance = (await bounded(db.execute(stmt))).scalar_one_or_none()
    if instance is None:
        await get_or_404(db, TaskInstance, instance_id, "TaskInstance")

    campaign = await bounded(db.get(Campaign, instance.campaign_id))
    requirement = await bounded(db.get(Requirement, instance.requirement_id))
    template = None
    if instance.task_template_id:
        template = await bounded(db.get(TaskTemplate, instance.task_template_id))
    return InstanceDetail(
        instance=instance,
        campaign=campaign,
        requirement=requirement,
        template=template,
        comments=list(instance.comments),
        evidence=list(instance.evidence),
        history=list(instance.history),
        is_overdue=is_overdue(instance.due_date, instance.status, now),
    )
