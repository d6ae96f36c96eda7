"""SQLModel ORM tables for the continuation engine store."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, String, Text
from sqlmodel import Field, SQLModel


class TaskRun(SQLModel, table=True):
    __tablename__ = "task_runs"  # type: ignore[bad-override]

    id: str = Field(primary_key=True)
    task_name: str = Field(index=True)
    input: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class StackRun(SQLModel, table=True):
    __tablename__ = "stack_runs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_stack_runs_dispatch", "status", "created_at", "seq"),)

    seq: int | None = Field(default=None, primary_key=True)
    id: str = Field(sa_column=Column(String, nullable=False, unique=True))
    parent_task_run_id: str = Field(
        sa_column=Column(
            ForeignKey("task_runs.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    parent_stack_run_id: str | None = Field(
        default=None,
        sa_column=Column(
            ForeignKey("stack_runs.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
        ),
    )
    service_name: str
    method_name: str
    args: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(index=True)
    result: str | None = Field(default=None, sa_column=Column(Text))
    error: str | None = Field(default=None, sa_column=Column(Text))
    vm_state: str | None = Field(default=None, sa_column=Column(Text))
    waiting_on_stack_run_id: str | None = Field(default=None, index=True)
    worker_id: str | None = None
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    ended_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))


class TaskLock(SQLModel, table=True):
    __tablename__ = "task_locks"  # type: ignore[bad-override]

    task_run_id: str = Field(
        sa_column=Column(
            ForeignKey("task_runs.id", ondelete="CASCADE"),
            primary_key=True,
        ),
    )
    locked_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    locked_by: str


class TaskFunction(SQLModel, table=True):
    __tablename__ = "task_functions"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    description: str | None = Field(default=None, sa_column=Column(Text))
    code: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class StackRunEvent(SQLModel, table=True):
    __tablename__ = "stack_run_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_stack_run_events_task_time", "task_run_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    stack_run_id: str | None = Field(default=None, index=True)
    task_run_id: str = Field(
        sa_column=Column(
            ForeignKey("task_runs.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
