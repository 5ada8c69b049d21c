"""Initial compliance schema: standards, requirements, task templates, campaigns, task instances

Revision ID: a1c4e7f0b2d5
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates:
- users, teams, team_members
- standards, requirements, task_templates, risks, documents
- requirement_task_templates, task_template_documents, requirement_risks (link tables)
- campaigns, campaign_selected_requirements
- task_instances (unique per campaign/requirement/template), evidence, comments, task_instance_history
- audit_logs
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'a1c4e7f0b2d5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

TASK_STATUS = sa.Enum('OPEN', 'IN_PROGRESS', 'PENDING_REVIEW', 'CLOSED', 'FAILED', name='taskinstancestatus')
REQUIREMENT_STATUS = sa.Enum('ACTIVE', 'DEPRECATED', 'PENDING', name='requirementstatus')
CHECK_TYPE = sa.Enum('MANUAL', 'AUTOMATED', 'DOCUMENT', 'INTERVIEW', name='highlevelchecktype')
AUDIT_ACTION = sa.Enum(
    'CREATE', 'UPDATE', 'DELETE', 'RETIRE', 'LINK', 'UNLINK', 'INSTANTIATE',
    'ACTIVATE', 'CLOSE', 'STATUS_CHANGE', 'COMMENT', 'EVIDENCE', name='auditaction',
)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    # --- users / teams ---
    op.create_table(
        'users',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('role', sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'teams',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_table(
        'team_members',
        sa.Column('team_id', sa.String(), sa.ForeignKey('teams.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('role_in_team', sa.String(), nullable=True),
        sa.Column('added_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('team_id', 'user_id'),
    )

    # --- standards / requirements ---
    op.create_table(
        'standards',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('short_name', sa.String(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version', sa.String(), nullable=True),
        sa.Column('issuing_body', sa.String(), nullable=True),
        sa.Column('jurisdiction', sa.String(), nullable=True),
        sa.Column('industry', sa.String(), nullable=True),
        sa.Column('official_link', sa.String(), nullable=True),
        sa.Column('retired_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_standards_name', 'standards', ['name'])

    op.create_table(
        'requirements',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('standard_id', sa.String(), sa.ForeignKey('standards.id'), nullable=False),
        sa.Column('control_id_reference', sa.String(), nullable=False),
        sa.Column('requirement_text', sa.Text(), nullable=False),
        sa.Column('priority', sa.String(), nullable=True),
        sa.Column('status', REQUIREMENT_STATUS, nullable=False),
        sa.Column('version', sa.String(), nullable=True),
        sa.Column('official_link', sa.String(), nullable=True),
        sa.Column('effective_date', sa.Date(), nullable=True),
        sa.Column('expiry_date', sa.Date(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_requirements_standard_id', 'requirements', ['standard_id'])
    op.create_index('ix_requirements_control_id_reference', 'requirements', ['control_id_reference'])

    # --- task templates / risks / documents ---
    op.create_table(
        'task_templates',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('default_priority', sa.String(), nullable=True),
        sa.Column('high_level_check_type', CHECK_TYPE, nullable=True),
        sa.Column('check_type', sa.String(), nullable=True),
        sa.Column('target', sa.String(), nullable=True),
        sa.Column('parameters', sa.JSON(), nullable=True),
        sa.Column('evidence_types_expected', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_templates_category', 'task_templates', ['category'])

    op.create_table(
        'risks',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('risk_id', sa.String(), nullable=False),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('likelihood', sa.String(), nullable=True),
        sa.Column('impact', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='open'),
        sa.Column('owner_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_risks_risk_id', 'risks', ['risk_id'], unique=True)

    op.create_table(
        'documents',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('document_type', sa.String(), nullable=False),
        sa.Column('source_url', sa.String(), nullable=True),
        sa.Column('internal_reference', sa.String(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )

    # --- link tables ---
    op.create_table(
        'requirement_task_templates',
        sa.Column('requirement_id', sa.String(), sa.ForeignKey('requirements.id', ondelete='CASCADE'), nullable=False),
        sa.Column('task_template_id', sa.String(), sa.ForeignKey('task_templates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('requirement_id', 'task_template_id'),
    )
    op.create_index('idx_rtt_task_template', 'requirement_task_templates', ['task_template_id'])

    op.create_table(
        'task_template_documents',
        sa.Column('task_template_id', sa.String(), sa.ForeignKey('task_templates.id', ondelete='CASCADE'), nullable=False),
        sa.Column('document_id', sa.String(), sa.ForeignKey('documents.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('task_template_id', 'document_id'),
    )
    op.create_table(
        'requirement_risks',
        sa.Column('requirement_id', sa.String(), sa.ForeignKey('requirements.id', ondelete='CASCADE'), nullable=False),
        sa.Column('risk_id', sa.String(), sa.ForeignKey('risks.id', ondelete='CASCADE'), nullable=False),
        sa.PrimaryKeyConstraint('requirement_id', 'risk_id'),
    )

    # --- campaigns ---
    op.create_table(
        'campaigns',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('standard_id', sa.String(), sa.ForeignKey('standards.id'), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('created_by', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index('ix_campaigns_standard_id', 'campaigns', ['standard_id'])

    op.create_table(
        'campaign_selected_requirements',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('campaign_id', sa.String(), sa.ForeignKey('campaigns.id', ondelete='CASCADE'), nullable=False),
        sa.Column('requirement_id', sa.String(), sa.ForeignKey('requirements.id'), nullable=False),
        sa.Column('is_applicable', sa.Boolean(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('campaign_id', 'requirement_id', name='uq_campaign_requirement'),
    )
    op.create_index('ix_campaign_selected_requirements_campaign_id', 'campaign_selected_requirements', ['campaign_id'])
    op.create_index('ix_campaign_selected_requirements_requirement_id', 'campaign_selected_requirements', ['requirement_id'])

    # --- task instances ---
    op.create_table(
        'task_instances',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('campaign_id', sa.String(), sa.ForeignKey('campaigns.id'), nullable=False),
        sa.Column('requirement_id', sa.String(), sa.ForeignKey('requirements.id'), nullable=False),
        sa.Column('task_template_id', sa.String(), sa.ForeignKey('task_templates.id'), nullable=True),
        sa.Column('campaign_selected_requirement_id', sa.String(),
                  sa.ForeignKey('campaign_selected_requirements.id'), nullable=True),
        sa.Column('title', sa.String(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(), nullable=True),
        sa.Column('priority', sa.String(), nullable=True),
        sa.Column('check_type', sa.String(), nullable=True),
        sa.Column('target', sa.String(), nullable=True),
        sa.Column('parameters', sa.JSON(), nullable=True),
        sa.Column('evidence_types_expected', sa.JSON(), nullable=True),
        sa.Column('status', TASK_STATUS, nullable=False),
        sa.Column('owner_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('assignee_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('due_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('campaign_id', 'requirement_id', 'task_template_id', name='uq_task_instance_triple'),
    )
    op.create_index('ix_task_instances_campaign_id', 'task_instances', ['campaign_id'])
    op.create_index('ix_task_instances_requirement_id', 'task_instances', ['requirement_id'])
    op.create_index('ix_task_instances_task_template_id', 'task_instances', ['task_template_id'])
    op.create_index('ix_task_instances_category', 'task_instances', ['category'])
    op.create_index('ix_task_instances_status', 'task_instances', ['status'])
    op.create_index('ix_task_instances_owner_user_id', 'task_instances', ['owner_user_id'])
    op.create_index('ix_task_instances_assignee_user_id', 'task_instances', ['assignee_user_id'])
    op.create_index('idx_task_instance_campaign_status', 'task_instances', ['campaign_id', 'status'])

    op.create_table(
        'evidence',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_instance_id', sa.String(), sa.ForeignKey('task_instances.id', ondelete='CASCADE'), nullable=False),
        sa.Column('uploader_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('file_ref', sa.String(), nullable=True),
        sa.Column('file_name', sa.String(), nullable=True),
        sa.Column('mime_type', sa.String(), nullable=True),
        sa.Column('file_size', sa.BigInteger(), nullable=True),
        sa.Column('url', sa.String(), nullable=True),
        sa.Column('text', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('copied_from_id', sa.String(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('uploaded_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_instance_id', 'idempotency_key', name='uq_evidence_idempotency'),
    )
    op.create_index('ix_evidence_task_instance_id', 'evidence', ['task_instance_id'])

    op.create_table(
        'comments',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_instance_id', sa.String(), sa.ForeignKey('task_instances.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('text', sa.Text(), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('task_instance_id', 'idempotency_key', name='uq_comment_idempotency'),
    )
    op.create_index('ix_comments_task_instance_id', 'comments', ['task_instance_id'])
    op.create_index('ix_comments_user_id', 'comments', ['user_id'])

    op.create_table(
        'task_instance_history',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_instance_id', sa.String(), sa.ForeignKey('task_instances.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('field_name', sa.String(), nullable=True),
        sa.Column('old_value', sa.Text(), nullable=True),
        sa.Column('new_value', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_instance_history_task_instance_id', 'task_instance_history', ['task_instance_id'])

    # --- audit ---
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=True),
        sa.Column('user_id', sa.String(), nullable=True),
        sa.Column('action', AUDIT_ACTION, nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_timestamp', 'audit_logs', ['timestamp'])
    op.create_index('ix_audit_logs_user_id', 'audit_logs', ['user_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_request_id', 'audit_logs', ['request_id'])
    op.create_index('idx_audit_entity', 'audit_logs', ['entity_type', 'entity_id'])


def downgrade() -> None:
    for table in (
        'audit_logs', 'task_instance_history', 'comments', 'evidence', 'task_instances',
        'campaign_selected_requirements', 'campaigns',
        'requirement_risks', 'task_template_documents', 'requirement_task_templates',
        'documents', 'risks', 'task_templates', 'requirements', 'standards',
        'team_members', 'teams', 'users',
    ):
        op.drop_table(table)
    for enum in (AUDIT_ACTION, TASK_STATUS, CHECK_TYPE, REQUIREMENT_STATUS):
        enum.drop(op.get_bind(), checkfirst=True)
