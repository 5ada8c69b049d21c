# query_projection.py - Read-side filtering, grouping, sorting and paging of task instances and templates
"""
The functions in the first half of this module are pure: they take lists of
view dataclasses and return new lists/dicts, touching neither the session
nor the views. The loaders at the bottom build those views from one
read of the store, without taking any entity lock.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from campaign_engine import derive_campaign_status, status_counts_by_campaign
from database import bounded
from entity_store import list_task_templates
from errors import ValidationError
from models import Campaign, Requirement, TaskInstance, TaskInstanceStatus, as_utc, utcnow
from task_lifecycle import is_overdue

logger = logging.getLogger("compliance-engine.projection")

UNCATEGORIZED = "Uncategorized"
STATUS_COLUMNS = [s.value for s in TaskInstanceStatus]


@dataclass(frozen=True)
class TaskInstanceView:
    id: str
    campaign_id: str
    requirement_id: str
    title: str
    status: str = TaskInstanceStatus.OPEN.value
    task_template_id: Optional[str] = None
    standard_id: Optional[str] = None
    control_id_reference: Optional[str] = None
    campaign_name: Optional[str] = None
    campaign_status: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    priority: Optional[str] = None
    owner_user_id: Optional[str] = None
    assignee_user_id: Optional[str] = None
    due_date: Optional[datetime] = None
    is_overdue: bool = False
    created_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "campaign_id": self.campaign_id,
            "campaign_name": self.campaign_name,
            "campaign_status": self.campaign_status,
            "requirement_id": self.requirement_id,
            "control_id_reference": self.control_id_reference,
            "standard_id": self.standard_id,
            "task_template_id": self.task_template_id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "priority": self.priority,
            "status": self.status,
            "owner_user_id": self.owner_user_id,
            "assignee_user_id": self.assignee_user_id,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "is_overdue": self.is_overdue,
        }


@dataclass(frozen=True)
class TaskTemplateView:
    id: str
    title: str
    description: Optional[str] = None
    category: Optional[str] = None
    default_priority: Optional[str] = None
    high_level_check_type: Optional[str] = None
    requirement_ids: tuple = ()
    standard_ids: tuple = ()
    document_ids: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "category": self.category,
            "default_priority": self.default_priority,
            "high_level_check_type": self.high_level_check_type,
            "requirement_ids": list(self.requirement_ids),
            "standard_ids": list(self.standard_ids),
            "linked_document_ids": list(self.document_ids),
        }


def _as_set(value) -> Optional[set]:
    if value is None:
        return None
    if isinstance(value, str):
        return {value}
    values = set(value)
    return values or None


def _text_match(needle: Optional[str], *haystacks: Optional[str]) -> bool:
    if not needle:
        return True
    needle = needle.casefold()
    return any(h and needle in h.casefold() for h in haystacks)


@dataclass
class InstanceFilter:
    """Every criterion left as None matches everything. Criteria combine with AND."""
    status: Any = None  # one status or a collection of them
    category: Any = None
    campaign_id: Optional[str] = None
    campaign_status: Optional[str] = None
    requirement_id: Optional[str] = None
    standard_id: Optional[str] = None
    task_template_id: Optional[str] = None
    owner_user_id: Optional[str] = None
    assignee_user_id: Optional[str] = None
    overdue: Optional[bool] = None
    text: Optional[str] = None

    def __post_init__(self):
        statuses = _as_set(self.status)
        if statuses:
            unknown = statuses - set(STATUS_COLUMNS)
            if unknown:
                raise ValidationError(
                    f"Invalid task status filter: {sorted(unknown)}",
                    code="CE-TASK-001",
                    details={"allowed": STATUS_COLUMNS},
                )
        self.status = statuses
        self.category = _as_set(self.category)

    def matches(self, view: TaskInstanceView) -> bool:
        if self.status and view.status not in self.status:
            return False
        if self.category and (view.category or UNCATEGORIZED) not in self.category:
            return False
        for name in ("campaign_id", "campaign_status", "requirement_id", "standard_id",
                     "task_template_id", "owner_user_id", "assignee_user_id"):
            wanted = getattr(self, name)
            if wanted is not None and getattr(view, name) != wanted:
                return False
        if self.overdue is not None and view.is_overdue != self.overdue:
            return False
        return _text_match(self.text, view.title, view.description)


@dataclass
class TemplateFilter:
    category: Any = None
    requirement_id: Optional[str] = None
    standard_id: Optional[str] = None
    high_level_check_type: Optional[str] = None
    text: Optional[str] = None

    def __post_init__(self):
        self.category = _as_set(self.category)

    def matches(self, view: TaskTemplateView) -> bool:
        if self.category and (view.category or UNCATEGORIZED) not in self.category:
            return False
        if self.requirement_id and self.requirement_id not in view.requirement_ids:
            return False
        if self.standard_id and self.standard_id not in view.standard_ids:
            return False
        if self.high_level_check_type and view.high_level_check_type != self.high_level_check_type:
            return False
        return _text_match(self.text, view.title, view.description)


@dataclass
class Page:
    items: List[Any] = field(default_factory=list)
    total: int = 0
    limit: Optional[int] = None
    offset: int = 0

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


# ============================================================
# PURE PROJECTIONS
# ============================================================

def filter_instances(views: Iterable[TaskInstanceView], criteria: Optional[InstanceFilter] = None) -> List[TaskInstanceView]:
    if criteria is None:
        return list(views)
    return [v for v in views if criteria.matches(v)]


def filter_templates(views: Iterable[TaskTemplateView], criteria: Optional[TemplateFilter] = None) -> List[TaskTemplateView]:
    if criteria is None:
        return list(views)
    return [v for v in views if criteria.matches(v)]


def group_by(views: Iterable[Any], key: Callable[[Any], Optional[str]], default: str,
             columns: Sequence[str] = ()) -> Dict[str, List[Any]]:
    """Group into ordered buckets. Fixed columns come first (even when empty), others follow sorted."""
    groups: Dict[str, List[Any]] = {c: [] for c in columns}
    extra: Dict[str, List[Any]] = {}
    for view in views:
        value = key(view) or default
        bucket = groups if value in groups else extra
        bucket.setdefault(value, []).append(view)
    for name in sorted(extra):
        groups[name] = extra[name]
    return groups


def group_by_status(views: Iterable[TaskInstanceView]) -> Dict[str, List[TaskInstanceView]]:
    return group_by(views, lambda v: v.status, TaskInstanceStatus.OPEN.value, STATUS_COLUMNS)


def group_by_category(views: Iterable[Any]) -> Dict[str, List[Any]]:
    return group_by(views, lambda v: v.category, UNCATEGORIZED)


def _casefold(value):
    return value.casefold() if isinstance(value, str) else value


def _due_key(view):
    return as_utc(view.due_date)


SORT_KEYS: Dict[str, Callable[[Any], Any]] = {
    "title": lambda v: _casefold(v.title),
    "due_date": _due_key,
    "campaign_name": lambda v: _casefold(v.campaign_name),
    "status": lambda v: STATUS_COLUMNS.index(v.status) if v.status in STATUS_COLUMNS else len(STATUS_COLUMNS),
    "category": lambda v: _casefold(v.category),
    "created_at": lambda v: as_utc(v.created_at),
}


def sort_views(views: Iterable[Any], sort_by: str = "title", descending: bool = False) -> List[Any]:
    """
    Total order: the requested key, then id ascending. Views missing the
    key (no due date, no campaign name) always sort last.
    """
    if sort_by not in SORT_KEYS:
        raise ValidationError(
            f"Unsupported sort key: {sort_by!r}",
            details={"allowed": sorted(SORT_KEYS)},
        )
    key = SORT_KEYS[sort_by]
    by_id = sorted(views, key=lambda v: v.id)
    present = [v for v in by_id if key(v) is not None]
    missing = [v for v in by_id if key(v) is None]
    present.sort(key=key, reverse=descending)
    return present + missing


def paginate(items: Sequence[Any], limit: Optional[int] = None, offset: int = 0) -> Page:
    if offset < 0 or (limit is not None and limit < 0):
        raise ValidationError("limit and offset must not be negative")
    end = None if limit is None else offset + limit
    return Page(items=list(items[offset:end]), total=len(items), limit=limit, offset=offset)


# ============================================================
# SNAPSHOT LOADERS
# ============================================================

async def load_instance_views(
    db: AsyncSession,
    campaign_id: Optional[str] = None,
    task_template_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> List[TaskInstanceView]:
    """Read task instances joined with their campaign and requirement into views."""
    stmt = (
        select(TaskInstance, Campaign, Requirement.standard_id, Requirement.control_id_reference)
        .join(Campaign, Campaign.id == TaskInstance.campaign_id)
        .join(Requirement, Requirement.id == TaskInstance.requirement_id)
    )
    if campaign_id:
        stmt = stmt.where(TaskInstance.campaign_id == campaign_id)
    if task_template_id:
        stmt = stmt.where(TaskInstance.task_template_id == task_template_id)
    rows = (await bounded(db.execute(stmt), "load task instances")).all()

    campaigns = {c.id: c for _, c, _, _ in rows}
    counts = await status_counts_by_campaign(db, list(campaigns))
    campaign_status = {
        cid: derive_campaign_status(c, counts.get(cid, {})).value for cid, c in campaigns.items()
    }

    now = now or utcnow()
    views = []
    for instance, campaign, standard_id, control_id in rows:
        views.append(TaskInstanceView(
            id=instance.id,
            campaign_id=instance.campaign_id,
            requirement_id=instance.requirement_id,
            title=instance.title,
            status=instance.status.value,
            task_template_id=instance.task_template_id,
            standard_id=standard_id,
            control_id_reference=control_id,
            campaign_name=campaign.name,
            campaign_status=campaign_status[campaign.id],
            description=instance.description,
            category=instance.category,
            priority=instance.priority,
            owner_user_id=instance.owner_user_id,
            assignee_user_id=instance.assignee_user_id,
            due_date=as_utc(instance.due_date),
            is_overdue=is_overdue(instance.due_date, instance.status, now),
            created_at=as_utc(instance.created_at),
        ))
    return views


async def load_template_views(db: AsyncSession) -> List[TaskTemplateView]:
    records = await list_task_templates(db)
    owners = dict((await bounded(db.execute(select(Requirement.id, Requirement.standard_id)))).all())
    views = []
    for record in records:
        template = record.template
        check_type = template.high_level_check_type
        views.append(TaskTemplateView(
            id=template.id,
            title=template.title,
            description=template.description,
            category=template.category,
            default_priority=template.default_priority,
            high_level_check_type=check_type.value if check_type else None,
            requirement_ids=tuple(record.requirement_ids),
            standard_ids=tuple(sorted({owners[r] for r in record.requirement_ids if r in owners})),
            document_ids=tuple(record.document_ids),
        ))
    return views
