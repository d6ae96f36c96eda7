"""Add task function catalogue and stack run audit events."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "task_functions",
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("code", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "stack_run_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("stack_run_id", sa.String(), nullable=True),
        sa.Column("task_run_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["task_run_id"], ["task_runs.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_stack_run_events_stack_run_id",
        "stack_run_events",
        ["stack_run_id"],
        unique=False,
    )
    op.create_index(
        "ix_stack_run_events_event_type",
        "stack_run_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_stack_run_events_task_time",
        "stack_run_events",
        ["task_run_id", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_stack_run_events_task_time", table_name="stack_run_events")
    op.drop_index("ix_stack_run_events_event_type", table_name="stack_run_events")
    op.drop_index("ix_stack_run_events_stack_run_id", table_name="stack_run_events")
    op.drop_table("stack_run_events")
    op.drop_table("task_functions")
