"""initial scheduler schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-01 00:00:00.000000+00:00

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB

# revision identifiers, used by Alembic.
revision: str = '0001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def _enum(name: str, *values: str) -> sa.Enum:
    return sa.Enum(*values, name=name, native_enum=False, create_constraint=True)


def upgrade() -> None:
    op.create_table(
        'machines',
        sa.Column('machine_id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('hostname', sa.String(255), nullable=True),
        sa.Column('platform', sa.String(50), nullable=True),
        sa.Column('metrics', JSONType, nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('metrics_updated_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'scheduled_tasks',
        sa.Column('task_id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column(
            'task_type',
            _enum('task_type', 'analyze_context', 'health_check', 'generate_recommendations', 'custom'),
            nullable=False,
        ),
        sa.Column(
            'schedule_type',
            _enum('schedule_type', 'cron', 'interval', 'threshold', 'manual'),
            nullable=False,
        ),
        sa.Column('cron_expression', sa.String(255), nullable=True),
        sa.Column('interval_hours', sa.Integer(), nullable=True),
        sa.Column('threshold_metric', sa.String(50), nullable=True),
        sa.Column('threshold_value', sa.Float(), nullable=True),
        sa.Column('threshold_op', sa.String(8), nullable=True),
        sa.Column('task_config', JSONType, nullable=False),
        sa.Column(
            'machine_id',
            sa.String(36),
            sa.ForeignKey('machines.machine_id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_on_success', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_on_failure', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_run_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index(
        'uq_scheduled_tasks_live_name',
        'scheduled_tasks',
        ['name'],
        unique=True,
        postgresql_where=sa.text('deleted_at IS NULL'),
        sqlite_where=sa.text('deleted_at IS NULL'),
    )

    op.create_table(
        'task_executions',
        sa.Column('execution_id', sa.String(36), primary_key=True),
        sa.Column(
            'task_id',
            sa.String(36),
            sa.ForeignKey('scheduled_tasks.task_id'),
            nullable=False,
        ),
        sa.Column(
            'status',
            _enum('execution_status', 'pending', 'running', 'completed', 'failed', 'cancelled'),
            nullable=False,
        ),
        sa.Column(
            'trigger_type',
            _enum('trigger_type', 'scheduled', 'manual', 'threshold', 'webhook'),
            nullable=False,
        ),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('result', JSONType, nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('error_kind', sa.String(20), nullable=True),
        sa.Column('projects_processed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('issues_found', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('tokens_saved', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('notifications_sent', JSONType, nullable=False),
    )
    op.create_index(
        'uq_task_executions_active_task',
        'task_executions',
        ['task_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'running')"),
        sqlite_where=sa.text("status IN ('pending', 'running')"),
    )
    op.create_index('ix_task_executions_started_at', 'task_executions', ['started_at'])

    op.create_table(
        'webhook_configs',
        sa.Column('webhook_id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column(
            'webhook_type',
            _enum('webhook_type', 'slack', 'discord', 'n8n', 'generic'),
            nullable=False,
        ),
        sa.Column('webhook_url', sa.Text(), nullable=False),
        sa.Column('config', JSONType, nullable=False),
        sa.Column('event_types', JSONType, nullable=False),
        sa.Column(
            'machine_id',
            sa.String(36),
            sa.ForeignKey('machines.machine_id', ondelete='SET NULL'),
            nullable=True,
        ),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )


def downgrade() -> None:
    op.drop_table('webhook_configs')
    op.drop_index('ix_task_executions_started_at', table_name='task_executions')
    op.drop_index('uq_task_executions_active_task', table_name='task_executions')
    op.drop_table('task_executions')
    op.drop_index('uq_scheduled_tasks_live_name', table_name='scheduled_tasks')
    op.drop_table('scheduled_tasks')
    op.drop_table('machines')
