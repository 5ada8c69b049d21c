# models.py - Database models for the compliance entity graph
# - UUID string primary keys everywhere
# - Many-to-many link tables (requirement <-> task template, task template <-> document,
#   requirement <-> risk) whose rows cascade when either side is deleted
# - Campaigns carry a frozen requirement selection set
# - Task instances are unique per (campaign, requirement, task template)
# - Append-only comments, evidence, history and check results per task instance

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from sqlalchemy import (
    Column, String, DateTime, Date, JSON, Boolean, BigInteger, Text,
    Enum as SQLEnum, ForeignKey, Index, Table, UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def utcnow():
    return datetime.now(timezone.utc)


def new_uuid():
    return str(uuid.uuid4())


def as_utc(dt):
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


# ============================================================
# ENUMS
# ============================================================

class RequirementStatus(str, PyEnum):
    ACTIVE = "active"
    DEPRECATED = "deprecated"
    PENDING = "pending"


class HighLevelCheckType(str, PyEnum):
    MANUAL = "manual"
    AUTOMATED = "automated"
    DOCUMENT = "document"
    INTERVIEW = "interview"


class CampaignStatus(str, PyEnum):
    DRAFT = "Draft"
    ACTIVE = "Active"
    COMPLETED = "Completed"


class TaskInstanceStatus(str, PyEnum):
    OPEN = "Open"
    IN_PROGRESS = "In Progress"
    PENDING_REVIEW = "Pending Review"
    CLOSED = "Closed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskInstanceStatus.CLOSED, TaskInstanceStatus.FAILED)


class AuditAction(str, PyEnum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RETIRE = "retire"
    LINK = "link"
    UNLINK = "unlink"
    INSTANTIATE = "instantiate"
    ACTIVATE = "activate"
    CLOSE = "close"
    STATUS_CHANGE = "status_change"
    COMMENT = "comment"
    EVIDENCE = "evidence"
    EXECUTE = "execute"


# ============================================================
# LINK TABLES
# ============================================================

requirement_task_templates = Table(
    "requirement_task_templates",
    Base.metadata,
    Column("requirement_id", String, ForeignKey("requirements.id", ondelete="CASCADE"), primary_key=True),
    Column("task_template_id", String, ForeignKey("task_templates.id", ondelete="CASCADE"), primary_key=True),
    Column("created_at", DateTime(timezone=True), default=utcnow),
    Index("idx_rtt_task_template", "task_template_id"),
)

task_template_documents = Table(
    "task_template_documents",
    Base.metadata,
    Column("task_template_id", String, ForeignKey("task_templates.id", ondelete="CASCADE"), primary_key=True),
    Column("document_id", String, ForeignKey("documents.id", ondelete="CASCADE"), primary_key=True),
)

requirement_risks = Table(
    "requirement_risks",
    Base.metadata,
    Column("requirement_id", String, ForeignKey("requirements.id", ondelete="CASCADE"), primary_key=True),
    Column("risk_id", String, ForeignKey("risks.id", ondelete="CASCADE"), primary_key=True),
)


# ============================================================
# USERS & TEAMS
# ============================================================

class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False, index=True)
    role = Column(String, default="user")
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Team(Base):
    __tablename__ = "teams"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    members = relationship("TeamMember", back_populates="team", cascade="all, delete-orphan")


class TeamMember(Base):
    __tablename__ = "team_members"

    team_id = Column(String, ForeignKey("teams.id", ondelete="CASCADE"), primary_key=True)
    user_id = Column(String, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    role_in_team = Column(String, default="member")
    added_at = Column(DateTime(timezone=True), default=utcnow)

    team = relationship("Team", back_populates="members")


# ============================================================
# STANDARDS, REQUIREMENTS, TASK TEMPLATES
# ============================================================

class Standard(Base):
    __tablename__ = "standards"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False, index=True)
    short_name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    version = Column(String, nullable=True)
    issuing_body = Column(String, nullable=True)
    jurisdiction = Column(String, nullable=True)
    industry = Column(String, nullable=True)
    official_link = Column(String, nullable=True)
    retired_at = Column(DateTime(timezone=True), nullable=True)  # Soft-retire only once referenced
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Requirement(Base):
    __tablename__ = "requirements"

    id = Column(String, primary_key=True, default=new_uuid)
    standard_id = Column(String, ForeignKey("standards.id"), nullable=False, index=True)
    control_id_reference = Column(String, nullable=False, index=True)
    requirement_text = Column(Text, nullable=False)
    priority = Column(String, nullable=True)
    status = Column(SQLEnum(RequirementStatus), default=RequirementStatus.ACTIVE, nullable=False)
    version = Column(String, nullable=True)
    official_link = Column(String, nullable=True)
    effective_date = Column(Date, nullable=True)
    expiry_date = Column(Date, nullable=True)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class TaskTemplate(Base):
    """Master task: the reusable definition a campaign instantiates per requirement"""
    __tablename__ = "task_templates"

    id = Column(String, primary_key=True, default=new_uuid)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True, index=True)
    default_priority = Column(String, nullable=True)
    high_level_check_type = Column(SQLEnum(HighLevelCheckType), nullable=True)

    # Automation descriptor
    check_type = Column(String, nullable=True)
    target = Column(String, nullable=True)
    parameters = Column(JSON, default=dict)

    evidence_types_expected = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Risk(Base):
    __tablename__ = "risks"

    id = Column(String, primary_key=True, default=new_uuid)
    risk_id = Column(String, nullable=False, unique=True, index=True)  # Business key, e.g. "RSK-014"
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True)
    likelihood = Column(String, nullable=True)
    impact = Column(String, nullable=True)
    status = Column(String, nullable=False, default="open")
    owner_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    tags = Column(JSON, default=list)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Document(Base):
    __tablename__ = "documents"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    document_type = Column(String, nullable=False)  # Policy, Procedure, SOP, ...
    source_url = Column(String, nullable=True)
    internal_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ============================================================
# CAMPAIGNS
# ============================================================

class Campaign(Base):
    """An audit cycle against one standard. Status is derived on read, never stored."""
    __tablename__ = "campaigns"

    id = Column(String, primary_key=True, default=new_uuid)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    standard_id = Column(String, ForeignKey("standards.id"), nullable=False, index=True)
    start_date = Column(Date, nullable=True)
    end_date = Column(Date, nullable=True)
    activated_at = Column(DateTime(timezone=True), nullable=True)
    closed_at = Column(DateTime(timezone=True), nullable=True)  # Explicit operator closure
    idempotency_key = Column(String, nullable=True, unique=True)
    created_by = Column(String, ForeignKey("users.id"), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    selections = relationship(
        "CampaignSelectedRequirement", back_populates="campaign",
        cascade="all, delete-orphan", order_by="CampaignSelectedRequirement.requirement_id",
    )


class CampaignSelectedRequirement(Base):
    """Frozen applicability flag captured when the campaign was created"""
    __tablename__ = "campaign_selected_requirements"

    id = Column(String, primary_key=True, default=new_uuid)
    campaign_id = Column(String, ForeignKey("campaigns.id", ondelete="CASCADE"), nullable=False, index=True)
    requirement_id = Column(String, ForeignKey("requirements.id"), nullable=False, index=True)
    is_applicable = Column(Boolean, nullable=False, default=True)

    campaign = relationship("Campaign", back_populates="selections")

    __table_args__ = (
        UniqueConstraint("campaign_id", "requirement_id", name="uq_campaign_requirement"),
    )


# ============================================================
# TASK INSTANCES
# ============================================================

class TaskInstance(Base):
    """Unit of audit work. Title/description/category/evidence types are a snapshot of the template."""
    __tablename__ = "task_instances"

    id = Column(String, primary_key=True, default=new_uuid)
    campaign_id = Column(String, ForeignKey("campaigns.id"), nullable=False, index=True)
    requirement_id = Column(String, ForeignKey("requirements.id"), nullable=False, index=True)
    task_template_id = Column(String, ForeignKey("task_templates.id"), nullable=True, index=True)  # NULL for ad hoc
    campaign_selected_requirement_id = Column(
        String, ForeignKey("campaign_selected_requirements.id"), nullable=True,
    )

    # Snapshot
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String, nullable=True, index=True)
    priority = Column(String, nullable=True)
    check_type = Column(String, nullable=True)
    target = Column(String, nullable=True)
    parameters = Column(JSON, default=dict)
    evidence_types_expected = Column(JSON, default=list)

    # Lifecycle
    status = Column(SQLEnum(TaskInstanceStatus), default=TaskInstanceStatus.OPEN, nullable=False, index=True)
    owner_user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    assignee_user_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    due_date = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    # Latest automated check
    last_checked_at = Column(DateTime(timezone=True), nullable=True)
    last_check_status = Column(String, nullable=True)

    comments = relationship("Comment", back_populates="task_instance", order_by="Comment.created_at")
    evidence = relationship("Evidence", back_populates="task_instance", order_by="Evidence.uploaded_at")
    history = relationship(
        "TaskInstanceHistory", back_populates="task_instance",
        order_by="TaskInstanceHistory.created_at",
    )

    __table_args__ = (
        UniqueConstraint("campaign_id", "requirement_id", "task_template_id", name="uq_task_instance_triple"),
        Index("idx_task_instance_campaign_status", "campaign_id", "status"),
    )


class Evidence(Base):
    """Evidence attached to a task instance. Storage of the blob itself is out of scope; file_ref is opaque."""
    __tablename__ = "evidence"

    id = Column(String, primary_key=True, default=new_uuid)
    task_instance_id = Column(String, ForeignKey("task_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    uploader_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    file_ref = Column(String, nullable=True)
    file_name = Column(String, nullable=True)
    mime_type = Column(String, nullable=True)
    file_size = Column(BigInteger, nullable=True)
    url = Column(String, nullable=True)
    text = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    copied_from_id = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=True)
    uploaded_at = Column(DateTime(timezone=True), default=utcnow)

    task_instance = relationship("TaskInstance", back_populates="evidence")

    __table_args__ = (
        UniqueConstraint("task_instance_id", "idempotency_key", name="uq_evidence_idempotency"),
    )


class Comment(Base):
    __tablename__ = "comments"

    id = Column(String, primary_key=True, default=new_uuid)
    task_instance_id = Column(String, ForeignKey("task_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    text = Column(Text, nullable=False)
    idempotency_key = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task_instance = relationship("TaskInstance", back_populates="comments")

    __table_args__ = (
        UniqueConstraint("task_instance_id", "idempotency_key", name="uq_comment_idempotency"),
    )


class TaskInstanceHistory(Base):
    """Action history for a task instance"""
    __tablename__ = "task_instance_history"

    id = Column(String, primary_key=True, default=new_uuid)
    task_instance_id = Column(String, ForeignKey("task_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    user_id = Column(String, ForeignKey("users.id"), nullable=True)
    action = Column(String, nullable=False)  # "created", "status_changed", "assigned", "commented", ...
    field_name = Column(String, nullable=True)
    old_value = Column(Text, nullable=True)
    new_value = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    task_instance = relationship("TaskInstance", back_populates="history")


class TaskInstanceResult(Base):
    """One run of a task instance's automated check"""
    __tablename__ = "task_instance_results"

    id = Column(String, primary_key=True, default=new_uuid)
    task_instance_id = Column(String, ForeignKey("task_instances.id", ondelete="CASCADE"), nullable=False, index=True)
    executed_by_user_id = Column(String, ForeignKey("users.id"), nullable=True)
    executed_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    check_type = Column(String, nullable=True)
    status = Column(String, nullable=False)  # Success, Failed, Error, Not Applicable
    output = Column(Text, nullable=True)


# ============================================================
# AUDIT LOG
# ============================================================

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(String, primary_key=True, default=new_uuid)
    timestamp = Column(DateTime(timezone=True), default=utcnow, index=True)
    user_id = Column(String, nullable=True, index=True)
    action = Column(SQLEnum(AuditAction), nullable=False, index=True)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    changes = Column(JSON, nullable=True)
    request_id = Column(String, nullable=True, index=True)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
    )
