"""Initial run engine schema

Revision ID: 4c1f2a9e7d10
Revises:
Create Date: 2026-10-18 09:12:31.418220

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4c1f2a9e7d10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    # 创建 projects 表
    op.create_table(
        'projects',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('concurrency', sa.Integer(), nullable=True),
        sa.Column('retention_policy', sa.String(50), nullable=False, server_default=sa.text("'retain_all'")),
        sa.Column('dataclip_retention_period', sa.Integer(), nullable=True),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    # 创建 workflows 表
    op.create_table(
        'workflows',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('project_id', sa.String(36), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('lock_version', sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column('concurrency', sa.Integer(), nullable=True),
        sa.Column('enable_job_logs', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('definition', sa.JSON(), nullable=False),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )

    # 创建 workflow_snapshots 表
    op.create_table(
        'workflow_snapshots',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workflow_id', sa.String(36), sa.ForeignKey('workflows.id'), nullable=False),
        sa.Column('lock_version', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('jobs', sa.JSON(), nullable=False),
        sa.Column('triggers', sa.JSON(), nullable=False),
        sa.Column('edges', sa.JSON(), nullable=False),
        sa.Column('positions', sa.JSON(), nullable=True),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.UniqueConstraint('workflow_id', 'lock_version', name='uq_snapshot_workflow_version'),
    )

    # 创建 dataclips 表
    op.create_table(
        'dataclips',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('project_id', sa.String(36), sa.ForeignKey('projects.id'), nullable=False),
        sa.Column('type', sa.String(50), nullable=False),
        sa.Column('body', sa.JSON(), nullable=True),
        sa.Column('request', sa.JSON(), nullable=True),
        sa.Column('name', sa.String(255), nullable=True),
        sa.Column('sha256', sa.String(64), nullable=True),
        sa.Column('wiped_at', sa.DateTime(), nullable=True),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index('idx_dataclips_project_inserted', 'dataclips', ['project_id', 'inserted_at'])
    op.create_index('idx_dataclips_sha256', 'dataclips', ['project_id', 'sha256'])

    # 创建 work_orders 表
    op.create_table(
        'work_orders',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('workflow_id', sa.String(36), sa.ForeignKey('workflows.id'), nullable=False),
        sa.Column('snapshot_id', sa.String(36), sa.ForeignKey('workflow_snapshots.id'), nullable=False),
        sa.Column('trigger_id', sa.String(36), nullable=True),
        sa.Column('dataclip_id', sa.String(36), sa.ForeignKey('dataclips.id'), nullable=False),
        sa.Column('state', sa.String(50), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('last_activity', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index('idx_work_orders_workflow_state', 'work_orders', ['workflow_id', 'state'])

    # 创建 runs 表
    op.create_table(
        'runs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('work_order_id', sa.String(36), sa.ForeignKey('work_orders.id'), nullable=False),
        sa.Column('workflow_id', sa.String(36), sa.ForeignKey('workflows.id'), nullable=False),
        sa.Column('snapshot_id', sa.String(36), sa.ForeignKey('workflow_snapshots.id'), nullable=False),
        sa.Column('starting_job_id', sa.String(36), nullable=True),
        sa.Column('starting_trigger_id', sa.String(36), nullable=True),
        sa.Column('dataclip_id', sa.String(36), sa.ForeignKey('dataclips.id'), nullable=False),
        sa.Column('parent_run_id', sa.String(36), sa.ForeignKey('runs.id'), nullable=True),
        sa.Column('state', sa.String(50), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('priority', sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column('exit_reason', sa.String(100), nullable=True),
        sa.Column('error_type', sa.String(255), nullable=True),
        sa.Column('worker_name', sa.String(255), nullable=True),
        sa.Column('run_timeout_seconds', sa.Integer(), nullable=True),
        sa.Column('created_by', sa.String(255), nullable=True),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('last_activity_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_runs_workflow_state', 'runs', ['workflow_id', 'state'])
    op.create_index('idx_runs_state_priority', 'runs', ['state', 'priority', 'inserted_at'])
    op.create_index('idx_runs_work_order', 'runs', ['work_order_id', 'inserted_at'])

    # 创建 steps / run_steps 表
    op.create_table(
        'steps',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('run_id', sa.String(36), sa.ForeignKey('runs.id'), nullable=False),
        sa.Column('job_id', sa.String(36), nullable=False),
        sa.Column('snapshot_id', sa.String(36), sa.ForeignKey('workflow_snapshots.id'), nullable=False),
        sa.Column('input_dataclip_id', sa.String(36), sa.ForeignKey('dataclips.id'), nullable=True),
        sa.Column('output_dataclip_id', sa.String(36), sa.ForeignKey('dataclips.id'), nullable=True),
        sa.Column('exit_reason', sa.String(100), nullable=True),
        sa.Column('error_type', sa.String(255), nullable=True),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
    )
    op.create_index('idx_steps_run', 'steps', ['run_id'])

    op.create_table(
        'run_steps',
        sa.Column('run_id', sa.String(36), sa.ForeignKey('runs.id'), primary_key=True),
        sa.Column('step_id', sa.String(36), sa.ForeignKey('steps.id'), primary_key=True),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index('idx_run_steps_step', 'run_steps', ['step_id'])

    # 创建 log_lines 表
    op.create_table(
        'log_lines',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('run_id', sa.String(36), sa.ForeignKey('runs.id'), nullable=False),
        sa.Column('step_id', sa.String(36), sa.ForeignKey('steps.id'), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('source', sa.String(50), nullable=True),
        sa.Column('level', sa.String(20), nullable=False, server_default=sa.text("'info'")),
        sa.Column('timestamp', sa.DateTime(), nullable=False),
        sa.Column('inserted_at', sa.DateTime(), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    )
    op.create_index('idx_log_lines_run', 'log_lines', ['run_id', 'id'])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index('idx_log_lines_run', table_name='log_lines')
    op.drop_table('log_lines')
    op.drop_index('idx_run_steps_step', table_name='run_steps')
    op.drop_table('run_steps')
    op.drop_index('idx_steps_run', table_name='steps')
    op.drop_table('steps')
    op.drop_index('idx_runs_work_order', table_name='runs')
    op.drop_index('idx_runs_state_priority', table_name='runs')
    op.drop_index('idx_runs_workflow_state', table_name='runs')
    op.drop_table('runs')
    op.drop_index('idx_work_orders_workflow_state', table_name='work_orders')
    op.drop_table('work_orders')
    op.drop_index('idx_dataclips_sha256', table_name='dataclips')
    op.drop_index('idx_dataclips_project_inserted', table_name='dataclips')
    op.drop_table('dataclips')
    op.drop_table('workflow_snapshots')
    op.drop_table('workflows')
    op.drop_table('projects')
