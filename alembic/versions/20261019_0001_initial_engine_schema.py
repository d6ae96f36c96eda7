"""Initial continuation engine schema: task runs, stack runs and task locks."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "task_runs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("task_name", sa.String(), nullable=False),
        sa.Column("input", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_task_runs_task_name", "task_runs", ["task_name"], unique=False)
    op.create_index("ix_task_runs_status", "task_runs", ["status"], unique=False)
    op.create_index("ix_task_runs_created_at", "task_runs", ["created_at"], unique=False)

    op.create_table(
        "stack_runs",
        sa.Column("seq", sa.Integer(), nullable=False),
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("parent_task_run_id", sa.String(), nullable=False),
        sa.Column("parent_stack_run_id", sa.String(), nullable=True),
        sa.Column("service_name", sa.String(), nullable=False),
        sa.Column("method_name", sa.String(), nullable=False),
        sa.Column("args", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("result", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("vm_state", sa.Text(), nullable=True),
        sa.Column("waiting_on_stack_run_id", sa.String(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["parent_task_run_id"], ["task_runs.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["parent_stack_run_id"], ["stack_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("seq"),
        sa.UniqueConstraint("id", name="uq_stack_runs_id"),
    )
    op.create_index("ix_stack_runs_status", "stack_runs", ["status"], unique=False)
    op.create_index("ix_stack_runs_created_at", "stack_runs", ["created_at"], unique=False)
    op.create_index(
        "ix_stack_runs_parent_task_run_id",
        "stack_runs",
        ["parent_task_run_id"],
        unique=False,
    )
    op.create_index(
        "ix_stack_runs_parent_stack_run_id",
        "stack_runs",
        ["parent_stack_run_id"],
        unique=False,
    )
    op.create_index(
        "ix_stack_runs_waiting_on_stack_run_id",
        "stack_runs",
        ["waiting_on_stack_run_id"],
        unique=False,
    )
    op.create_index(
        "idx_stack_runs_dispatch",
        "stack_runs",
        ["status", "created_at", "seq"],
        unique=False,
    )

    op.create_table(
        "task_locks",
        sa.Column("task_run_id", sa.String(), nullable=False),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(), nullable=False),
        sa.ForeignKeyConstraint(["task_run_id"], ["task_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("task_run_id"),
    )


def downgrade() -> None:
    op.drop_table("task_locks")
    op.drop_index("idx_stack_runs_dispatch", table_name="stack_runs")
    op.drop_index("ix_stack_runs_waiting_on_stack_run_id", table_name="stack_runs")
    op.drop_index("ix_stack_runs_parent_stack_run_id", table_name="stack_runs")
    op.drop_index("ix_stack_runs_parent_task_run_id", table_name="stack_runs")
    op.drop_index("ix_stack_runs_created_at", table_name="stack_runs")
    op.drop_index("ix_stack_runs_status", table_name="stack_runs")
    op.drop_table("stack_runs")
    op.drop_index("ix_task_runs_created_at", table_name="task_runs")
    op.drop_index("ix_task_runs_status", table_name="task_runs")
    op.drop_index("ix_task_runs_task_name", table_name="task_runs")
    op.drop_table("task_runs")
