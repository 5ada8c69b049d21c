# linkage.py - Idempotent TaskTemplate <-> Requirement association
"""
Link and unlink never touch task instances. Linking a template to a
requirement while a campaign is running does not backfill that campaign;
campaign scope is frozen at creation and instantiation happens only in
campaign_engine.create_campaign.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, List

from sqlalchemy.ext.asyncio import AsyncSession

from audit import OperationContext, record_audit
from database import unit_of_work
from entity_store import (
    get_or_404, ensure_exist, linked_requirement_ids,
    insert_requirement_links, delete_requirement_links,
)
from locks import get_entity_locks
from models import TaskTemplate, Requirement, AuditAction

logger = logging.getLogger("compliance-engine.linkage")


@dataclass
class LinkResult:
    """Tagged outcome of a link/unlink call. Already-linked and not-linked pairs are reported, not raised."""
    task_template_id: str
    linked: List[str] = field(default_factory=list)
    already_linked: List[str] = field(default_factory=list)
    unlinked: List[str] = field(default_factory=list)
    not_linked: List[str] = field(default_factory=list)
    requirement_ids: List[str] = field(default_factory=list)  # Link set after the call

    @property
    def changed(self) -> bool:
        return bool(self.linked or self.unlinked)

    def to_dict(self) -> dict:
        return {
            "task_template_id": self.task_template_id,
            "linked": self.linked,
            "already_linked": self.already_linked,
            "unlinked": self.unlinked,
            "not_linked": self.not_linked,
            "requirement_ids": self.requirement_ids,
            "changed": self.changed,
        }


async def link_task_to_requirements(
    db: AsyncSession, ctx: OperationContext, task_template_id: str, requirement_ids: Iterable[str],
) -> LinkResult:
    requested = sorted(set(requirement_ids))
    async with get_entity_locks().hold("task_template", task_template_id):
        await get_or_404(db, TaskTemplate, task_template_id, "TaskTemplate")
        await ensure_exist(db, Requirement, requested, "Requirement")

        current = await linked_requirement_ids(db, task_template_id)
        result = LinkResult(task_template_id=task_template_id)
        result.already_linked = [r for r in requested if r in current]
        result.linked = [r for r in requested if r not in current]

        if result.linked:
            async with unit_of_work(db, "link task template"):
                await insert_requirement_links(db, task_template_id, result.linked)
                record_audit(db, ctx, AuditAction.LINK, "task_template", task_template_id,
                             {"requirement_ids": result.linked})
            logger.info(f"Linked task template {task_template_id} to {len(result.linked)} requirement(s)")

        result.requirement_ids = sorted(current | set(result.linked))
    return result


async def unlink_task_from_requirements(
    db: AsyncSession, ctx: OperationContext, task_template_id: str, requirement_ids: Iterable[str],
) -> LinkResult:
    """Remove associations only. Requirement ids that no longer exist are reported as not linked."""
    requested = sorted(set(requirement_ids))
    async with get_entity_locks().hold("task_template", task_template_id):
        await get_or_404(db, TaskTemplate, task_template_id, "TaskTemplate")

        current = await linked_requirement_ids(db, task_template_id)
        result = LinkResult(task_template_id=task_template_id)
        result.unlinked = [r for r in requested if r in current]
        result.not_linked = [r for r in requested if r not in current]

        if result.unlinked:
            async with unit_of_work(db, "unlink task template"):
                await delete_requirement_links(db, task_template_id, result.unlinked)
                record_audit(db, ctx, AuditAction.UNLINK, "task_template", task_template_id,
                             {"requirement_ids": result.unlinked})
            logger.info(f"Unlinked task template {task_template_id} from {len(result.unlinked)} requirement(s)")

        result.requirement_ids = sorted(current - set(result.unlinked))
    return result
