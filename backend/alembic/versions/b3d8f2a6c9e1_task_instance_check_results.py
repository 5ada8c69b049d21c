"""Automated check results for task instances

Revision ID: b3d8f2a6c9e1
Revises: a1c4e7f0b2d5
Create Date: 2026-10-19 12:00:00.000000

Adds:
- task_instances.last_checked_at / last_check_status
- task_instance_results (one row per check run)
- 'EXECUTE' audit action
"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision: str = 'b3d8f2a6c9e1'
down_revision: Union[str, None] = 'a1c4e7f0b2d5'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column('task_instances', sa.Column('last_checked_at', sa.DateTime(timezone=True), nullable=True))
    op.add_column('task_instances', sa.Column('last_check_status', sa.String(), nullable=True))

    op.create_table(
        'task_instance_results',
        sa.Column('id', sa.String(), nullable=False),
        sa.Column('task_instance_id', sa.String(), sa.ForeignKey('task_instances.id', ondelete='CASCADE'), nullable=False),
        sa.Column('executed_by_user_id', sa.String(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('check_type', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('output', sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_task_instance_results_task_instance_id', 'task_instance_results', ['task_instance_id'])
    op.create_index('ix_task_instance_results_executed_at', 'task_instance_results', ['executed_at'])

    if op.get_bind().dialect.name == 'postgresql':
        op.execute("ALTER TYPE auditaction ADD VALUE IF NOT EXISTS 'EXECUTE'")


def downgrade() -> None:
    op.drop_table('task_instance_results')
    op.drop_column('task_instances', 'last_check_status')
    op.drop_column('task_instances', 'last_checked_at')
    # Postgres cannot drop a single enum value; 'EXECUTE' stays on auditaction
