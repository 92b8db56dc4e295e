"""Initial schema: agent tasks and task workspaces.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Agent tasks (one row per logical task; re-runs update it in place)
    op.create_table(
        "agent_tasks",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("agent_id", sa.String(100), nullable=False),
        sa.Column("container_id", sa.String(100), nullable=True),
        sa.Column("task_description", sa.Text(), nullable=False),
        sa.Column("platform", sa.String(), nullable=True),
        sa.Column("platform_channel_id", sa.String(), nullable=True),
        sa.Column("platform_thread_id", sa.String(), nullable=True),
        sa.Column("user_id", sa.String(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("agent_id", name="uq_agent_tasks_agent_id"),
    )
    op.create_index("ix_agent_tasks_status_completed_at", "agent_tasks", ["status", "completed_at"])

    # Task workspaces
    op.create_table(
        "task_workspaces",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("task_id", sa.String(100), nullable=False),
        sa.Column("workspace_path", sa.String(500), nullable=False),
        sa.Column("workspace_name", sa.String(200), nullable=False),
        sa.Column("github_repo_url", sa.String(500), nullable=True),
        sa.Column("github_repo_name", sa.String(200), nullable=True),
        sa.Column("is_primary", sa.Boolean(), nullable=False, server_default="true"),
        sa.Column("status", sa.String(50), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("task_id", "workspace_path", name="uq_task_workspace_path"),
    )
    op.create_index("ix_task_workspaces_task_id", "task_workspaces", ["task_id"])
    op.create_index("ix_task_workspaces_status", "task_workspaces", ["status"])
    # At most one active primary workspace per task
    op.create_index(
        "uq_task_workspaces_one_primary",
        "task_workspaces",
        ["task_id"],
        unique=True,
        postgresql_where=sa.text("is_primary AND status = 'active'"),
    )


def downgrade() -> None:
    op.drop_index("uq_task_workspaces_one_primary", table_name="task_workspaces")
    op.drop_index("ix_task_workspaces_status", table_name="task_workspaces")
    op.drop_index("ix_task_workspaces_task_id", table_name="task_workspaces")
    op.drop_table("task_workspaces")
    op.drop_index("ix_agent_tasks_status_completed_at", table_name="agent_tasks")
    op.drop_table("agent_tasks")
