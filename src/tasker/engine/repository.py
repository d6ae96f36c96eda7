"""Persistent store for task runs, continuation frames and task locks."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import and_, exists, func, or_
from sqlalchemy import delete as sa_delete
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, col, select

from tasker.engine.models import (
    TASK_METHOD_NAME,
    TASK_SERVICE_NAME,
    TERMINAL_TASK_RUN_STATUSES,
    CallDescriptor,
    FrameError,
    StackRunEventView,
    StackRunStatus,
    StackRunView,
    TaskFunctionView,
    TaskLockView,
    TaskRunDetails,
    TaskRunStatus,
    TaskRunView,
    VmState,
)
from tasker.storage.alembic_runner import upgrade_head
from tasker.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from tasker.storage.sqlmodel_models import (
    StackRun,
    StackRunEvent,
    TaskFunction,
    TaskLock,
    TaskRun,
)

logger = logging.getLogger(__name__)

_ACTIVE_CHAIN_STATUSES = (
    StackRunStatus.PROCESSING.value,
    StackRunStatus.SUSPENDED_WAITING_CHILD.value,
    StackRunStatus.PENDING_RESUME.value,
)


class EngineRepository:
    """Store facade backed by SQLModel + SQLite.

    Every frame transition is an optimistic update scoped by id and expected
    prior status. A lost race returns ``False``/``None`` instead of raising.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- task functions -------------------------------------------------

    def upsert_task_function(
        self,
        *,
        name: str,
        code: str,
        description: str | None = None,
    ) -> TaskFunctionView:
        """Register task code under a name, replacing any previous code."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(select(TaskFunction).where(TaskFunction.name == name)).one_or_none()
            if row is None:
                row = TaskFunction(
                    name=name,
                    code=code,
                    description=description,
                    created_at=now,
                    updated_at=now,
                )
            else:
                row.code = code
                row.description = description
                row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task_function_view(row)

    def get_task_function(self, name: str) -> TaskFunctionView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskFunction).where(TaskFunction.name == name)).one_or_none()
        return _to_task_function_view(row) if row is not None else None

    def list_task_functions(self) -> list[TaskFunctionView]:
        with Session(self.engine) as session:
            rows = session.exec(select(TaskFunction).order_by(col(TaskFunction.name).asc())).all()
        return [_to_task_function_view(row) for row in rows]

    # -- task runs ------------------------------------------------------

    def create_task_run(
        self,
        *,
        task_name: str,
        task_input: Any,
        task_code: str,
    ) -> tuple[TaskRunView, StackRunView]:
        """Create a queued task run together with its pending root task-body frame."""

        now = to_db_datetime(utc_now())
        task_run_id = str(uuid4())
        root_id = str(uuid4())
        vm_state = VmState(task_code=task_code, task_name=task_name, task_input=task_input)
        with Session(self.engine) as session:
            task_run = TaskRun(
                id=task_run_id,
                task_name=task_name,
                input=dump_json(task_input),
                status=TaskRunStatus.QUEUED.value,
                created_at=now,
                updated_at=now,
            )
            session.add(task_run)
            session.flush()
            root = StackRun(
                id=root_id,
                parent_task_run_id=task_run_id,
                parent_stack_run_id=None,
                service_name=TASK_SERVICE_NAME,
                method_name=TASK_METHOD_NAME,
                args=dump_json([task_name, task_input]),
                status=StackRunStatus.PENDING.value,
                vm_state=dump_json(vm_state.to_dict()),
                created_at=now,
                updated_at=now,
            )
            session.add(root)
            self._add_event(
                session=session,
                task_run_id=task_run_id,
                stack_run_id=None,
                event_type="task_run_queued",
                status_from=None,
                status_to=TaskRunStatus.QUEUED.value,
                details={"task_name": task_name},
            )
            self._add_event(
                session=session,
                task_run_id=task_run_id,
                stack_run_id=root_id,
                event_type="created",
                status_from=None,
                status_to=StackRunStatus.PENDING.value,
                details={"service_name": TASK_SERVICE_NAME, "method_name": TASK_METHOD_NAME},
            )
            session.commit()
            session.refresh(task_run)
            session.refresh(root)
            return _to_task_run_view(task_run), _to_stack_run_view(root)

    def get_task_run(self, task_run_id: str) -> TaskRunView | None:
        with Session(self.engine) as session:
            row = session.exec(select(TaskRun).where(TaskRun.id == task_run_id)).one_or_none()
        return _to_task_run_view(row) if row is not None else None

    def list_task_runs(
        self,
        *,
        status: TaskRunStatus | None = None,
        limit: int = 50,
    ) -> list[TaskRunView]:
        """List recent task runs, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(TaskRun).order_by(col(TaskRun.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(TaskRun.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_run_view(row) for row in rows]

    def get_task_run_details(self, task_run_id: str) -> TaskRunDetails | None:
        """Return a task run with its frames and event stream."""

        with Session(self.engine) as session:
            task_run = session.exec(select(TaskRun).where(TaskRun.id == task_run_id)).one_or_none()
            if task_run is None:
                return None
            frame_rows = session.exec(
                select(StackRun)
                .where(StackRun.parent_task_run_id == task_run_id)
                .order_by(col(StackRun.seq).asc()),
            ).all()
            event_rows = session.exec(
                select(StackRunEvent)
                .where(StackRunEvent.task_run_id == task_run_id)
                .order_by(col(StackRunEvent.id).asc()),
            ).all()

        events: list[StackRunEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                StackRunEventView(
                    event_id=row.id or 0,
                    task_run_id=row.task_run_id,
                    stack_run_id=row.stack_run_id,
                    event_type=row.event_type,
                    status_from=row.status_from,
                    status_to=row.status_to,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskRunDetails(
            task_run=_to_task_run_view(task_run),
            frames=[_to_stack_run_view(row) for row in frame_rows],
            events=events,
        )

    def finish_task_run(
        self,
        *,
        task_run_id: str,
        status: TaskRunStatus,
        result: Any = None,
        error: FrameError | None = None,
    ) -> bool:
        """Move a non-terminal task run to completed/failed."""

        if status not in TERMINAL_TASK_RUN_STATUSES:
            raise ValueError(f"Unsupported task run terminal status: {status}")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            previous = session.exec(
                select(TaskRun.status).where(TaskRun.id == task_run_id),
            ).one_or_none()
            if previous is None:
                raise RuntimeError(f"Task run not found: {task_run_id}")
            outcome = session.exec(
                sa_update(TaskRun)
                .where(
                    col(TaskRun.id) == task_run_id,
                    col(TaskRun.status).notin_([item.value for item in TERMINAL_TASK_RUN_STATUSES]),
                )
                .values(
                    status=status.value,
                    result=dump_json(result) if status is TaskRunStatus.COMPLETED else None,
                    error=dump_json(error.to_dict()) if error is not None else None,
                    started_at=func.coalesce(TaskRun.started_at, now),
                    ended_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_run_id=task_run_id,
                stack_run_id=None,
                event_type=f"task_run_{status.value}",
                status_from=previous,
                status_to=status.value,
                details={"error": error.message} if error is not None else {},
            )
            session.commit()
            return True

    # -- frames ---------------------------------------------------------

    def get_stack_run(self, stack_run_id: str) -> StackRunView | None:
        with Session(self.engine) as session:
            row = session.exec(select(StackRun).where(StackRun.id == stack_run_id)).one_or_none()
        return _to_stack_run_view(row) if row is not None else None

    def list_stack_runs(self, *, task_run_id: str) -> list[StackRunView]:
        """All frames of one task chain in creation order."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(StackRun)
                .where(StackRun.parent_task_run_id == task_run_id)
                .order_by(col(StackRun.created_at).asc(), col(StackRun.seq).asc()),
            ).all()
        return [_to_stack_run_view(row) for row in rows]

    def has_pending_frames(self, *, stranded_before: datetime | None = None) -> bool:
        """Whether any frame is pending, or stranded in pending_resume before the cutoff."""

        ready = col(StackRun.status) == StackRunStatus.PENDING.value
        if stranded_before is not None:
            ready = or_(
                ready,
                and_(
                    col(StackRun.status) == StackRunStatus.PENDING_RESUME.value,
                    col(StackRun.updated_at) < to_db_datetime(stranded_before),
                ),
            )
        with Session(self.engine) as session:
            row = session.exec(select(StackRun.seq).where(ready).limit(1)).first()
        return row is not None

    def list_stranded_resumes(self, *, older_than: datetime, limit: int = 20) -> list[StackRunView]:
        """Frames left in pending_resume since before ``older_than``, oldest first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(StackRun)
                .where(
                    StackRun.status == StackRunStatus.PENDING_RESUME.value,
                    col(StackRun.updated_at) < to_db_datetime(older_than),
                )
                .order_by(col(StackRun.updated_at).asc(), col(StackRun.seq).asc())
                .limit(limit),
            ).all()
        return [_to_stack_run_view(row) for row in rows]

    def list_dispatch_candidates(self, *, limit: int = 20) -> list[StackRunView]:
        """Oldest pending frames that have no earlier pending sibling in their chain."""

        earlier = aliased(StackRun)
        earlier_pending = exists().where(
            earlier.parent_task_run_id == StackRun.parent_task_run_id,
            earlier.status == StackRunStatus.PENDING.value,
            or_(
                earlier.created_at < StackRun.created_at,
                and_(earlier.created_at == StackRun.created_at, earlier.seq < StackRun.seq),
            ),
        )
        with Session(self.engine) as session:
            rows = session.exec(
                select(StackRun)
                .where(StackRun.status == StackRunStatus.PENDING.value, ~earlier_pending)
                .order_by(col(StackRun.created_at).asc(), col(StackRun.seq).asc())
                .limit(limit),
            ).all()
        return [_to_stack_run_view(row) for row in rows]

    def has_earlier_pending_sibling(self, frame: StackRunView) -> bool:
        """Whether another pending frame of the same chain was created strictly earlier."""

        created_at = to_db_datetime(frame.created_at)
        with Session(self.engine) as session:
            row = session.exec(
                select(StackRun.seq)
                .where(
                    StackRun.parent_task_run_id == frame.parent_task_run_id,
                    StackRun.status == StackRunStatus.PENDING.value,
                    col(StackRun.id) != frame.id,
                    or_(
                        col(StackRun.created_at) < created_at,
                        and_(col(StackRun.created_at) == created_at, col(StackRun.seq) < frame.seq),
                    ),
                )
                .limit(1),
            ).first()
        return row is not None

    def is_chain_busy(self, task_run_id: str) -> bool:
        """Whether any frame of the chain is currently processing."""

        with Session(self.engine) as session:
            row = session.exec(
                select(StackRun.seq)
                .where(
                    StackRun.parent_task_run_id == task_run_id,
                    StackRun.status == StackRunStatus.PROCESSING.value,
                )
                .limit(1),
            ).first()
        return row is not None

    def find_waiter(self, stack_run_id: str) -> StackRunView | None:
        """Frame whose ``waiting_on_stack_run_id`` points at the given frame."""

        with Session(self.engine) as session:
            row = session.exec(
                select(StackRun)
                .where(StackRun.waiting_on_stack_run_id == stack_run_id)
                .order_by(col(StackRun.seq).asc())
                .limit(1),
            ).first()
        return _to_stack_run_view(row) if row is not None else None

    def claim_frame(
        self,
        *,
        stack_run_id: str,
        expected_status: StackRunStatus,
        worker_id: str,
    ) -> StackRunView | None:
        """Move a pending or pending_resume frame to processing.

        The owning task run leaves ``queued`` the first time one of its frames
        is claimed.
        """

        if expected_status not in {StackRunStatus.PENDING, StackRunStatus.PENDING_RESUME}:
            raise ValueError(f"Frames cannot be claimed from status={expected_status.value}")

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StackRun)
                .where(
                    col(StackRun.id) == stack_run_id,
                    col(StackRun.status) == expected_status.value,
                )
                .values(
                    status=StackRunStatus.PROCESSING.value,
                    worker_id=worker_id,
                    started_at=func.coalesce(StackRun.started_at, now),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            claimed = session.exec(select(StackRun).where(StackRun.id == stack_run_id)).one()
            task_result = session.exec(
                sa_update(TaskRun)
                .where(
                    col(TaskRun.id) == claimed.parent_task_run_id,
                    col(TaskRun.status) == TaskRunStatus.QUEUED.value,
                )
                .values(
                    status=TaskRunStatus.PROCESSING.value,
                    started_at=now,
                    updated_at=now,
                ),
            )
            if task_result.rowcount == 1:
                self._add_event(
                    session=session,
                    task_run_id=claimed.parent_task_run_id,
                    stack_run_id=None,
                    event_type="task_run_processing",
                    status_from=TaskRunStatus.QUEUED.value,
                    status_to=TaskRunStatus.PROCESSING.value,
                    details={},
                )
            self._add_event(
                session=session,
                task_run_id=claimed.parent_task_run_id,
                stack_run_id=stack_run_id,
                event_type="claimed" if expected_status is StackRunStatus.PENDING else "resumed",
                status_from=expected_status.value,
                status_to=StackRunStatus.PROCESSING.value,
                details={"worker_id": worker_id},
            )
            session.commit()
            session.refresh(claimed)
            return _to_stack_run_view(claimed)

    def suspend_frame(
        self,
        *,
        frame: StackRunView,
        vm_state: VmState,
        call: CallDescriptor,
        child_vm_state: VmState | None = None,
    ) -> StackRunView | None:
        """Create the child frame for ``call`` and park ``frame`` waiting on it.

        Child insert and parent update commit together. If the parent is no
        longer processing nothing is written and ``None`` is returned.
        """

        now = to_db_datetime(utc_now())
        child_id = str(uuid4())
        child_state = dump_json(child_vm_state.to_dict()) if child_vm_state is not None else None
        with Session(self.engine) as session:
            child = StackRun(
                id=child_id,
                parent_task_run_id=frame.parent_task_run_id,
                parent_stack_run_id=frame.id,
                service_name=call.service_name,
                method_name=call.method_name,
                args=dump_json(call.args),
                status=StackRunStatus.PENDING.value,
                vm_state=child_state,
                created_at=now,
                updated_at=now,
            )
            session.add(child)
            session.flush()

            result = session.exec(
                sa_update(StackRun)
                .where(
                    col(StackRun.id) == frame.id,
                    col(StackRun.status) == StackRunStatus.PROCESSING.value,
                )
                .values(
                    status=StackRunStatus.SUSPENDED_WAITING_CHILD.value,
                    waiting_on_stack_run_id=child_id,
                    vm_state=dump_json(vm_state.to_dict()),
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            self._add_event(
                session=session,
                task_run_id=frame.parent_task_run_id,
                stack_run_id=child_id,
                event_type="created",
                status_from=None,
                status_to=StackRunStatus.PENDING.value,
                details={
                    "service_name": call.service_name,
                    "method_name": call.method_name,
                    "parent_stack_run_id": frame.id,
                },
            )
            self._add_event(
                session=session,
                task_run_id=frame.parent_task_run_id,
                stack_run_id=frame.id,
                event_type="suspended",
                status_from=StackRunStatus.PROCESSING.value,
                status_to=StackRunStatus.SUSPENDED_WAITING_CHILD.value,
                details={"waiting_on_stack_run_id": child_id, "sequence": vm_state.call_sequence},
            )
            session.commit()
            session.refresh(child)
            return _to_stack_run_view(child)

    def complete_frame(self, *, stack_run_id: str, result: Any) -> bool:
        """Mark a processing frame as completed."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(StackRun)
                .where(
                    col(StackRun.id) == stack_run_id,
                    col(StackRun.status) == StackRunStatus.PROCESSING.value,
                )
                .values(
                    status=StackRunStatus.COMPLETED.value,
                    result=dump_json(result),
                    error=None,
                    waiting_on_stack_run_id=None,
                    ended_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            task_run_id = self._task_run_id_of(session=session, stack_run_id=stack_run_id)
            self._add_event(
                session=session,
                task_run_id=task_run_id,
                stack_run_id=stack_run_id,
                event_type="completed",
                status_from=StackRunStatus.PROCESSING.value,
                status_to=StackRunStatus.COMPLETED.value,
                details={},
            )
            session.commit()
            return True

    def fail_frame(
        self,
        *,
        stack_run_id: str,
        error: FrameError,
        expected_status: StackRunStatus = StackRunStatus.PROCESSING,
        waiting_on_stack_run_id: str | None = None,
    ) -> bool:
        """Mark a frame failed if it is still in ``expected_status``.

        ``waiting_on_stack_run_id`` additionally guards a suspended frame so
        that only the child it waits on can fail it.
        """

        now = to_db_datetime(utc_now())
        conditions = [
            col(StackRun.id) == stack_run_id,
            col(StackRun.status) == expected_status.value,
        ]
        if waiting_on_stack_run_id is not None:
            conditions.append(col(StackRun.waiting_on_stack_run_id) == waiting_on_stack_run_id)
        with Session(self.engine) as session:
            outcome = session.exec(
                sa_update(StackRun)
                .where(*conditions)
                .values(
                    status=StackRunStatus.FAILED.value,
                    error=dump_json(error.to_dict()),
                    waiting_on_stack_run_id=None,
                    ended_at=now,
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            task_run_id = self._task_run_id_of(session=session, stack_run_id=stack_run_id)
            self._add_event(
                session=session,
                task_run_id=task_run_id,
                stack_run_id=stack_run_id,
                event_type="failed",
                status_from=expected_status.value,
                status_to=StackRunStatus.FAILED.value,
                details={"kind": error.kind.value, "message": error.message},
            )
            session.commit()
            return True

    def prepare_resume(
        self,
        *,
        stack_run_id: str,
        child_stack_run_id: str,
        service_name: str,
        method_name: str,
        result: Any,
    ) -> bool:
        """Append the child's result to the memo log and mark the frame pending_resume.

        Applies only while the frame is suspended waiting on exactly this child.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(StackRun).where(
                    StackRun.id == stack_run_id,
                    StackRun.status == StackRunStatus.SUSPENDED_WAITING_CHILD.value,
                    StackRun.waiting_on_stack_run_id == child_stack_run_id,
                ),
            ).one_or_none()
            if row is None:
                return False
            if row.vm_state is None:
                logger.error(
                    "Suspended frame %s has no vm_state; cannot resume it",
                    stack_run_id,
                )
                return False
            vm_state = VmState.from_dict(load_json(row.vm_state)).with_result(
                service_name=service_name,
                method_name=method_name,
                result=result,
            )
            outcome = session.exec(
                sa_update(StackRun)
                .where(
                    col(StackRun.id) == stack_run_id,
                    col(StackRun.status) == StackRunStatus.SUSPENDED_WAITING_CHILD.value,
                    col(StackRun.waiting_on_stack_run_id) == child_stack_run_id,
                )
                .values(
                    status=StackRunStatus.PENDING_RESUME.value,
                    waiting_on_stack_run_id=None,
                    vm_state=dump_json(vm_state.to_dict()),
                    updated_at=now,
                ),
            )
            if outcome.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_run_id=row.parent_task_run_id,
                stack_run_id=stack_run_id,
                event_type="resume_prepared",
                status_from=StackRunStatus.SUSPENDED_WAITING_CHILD.value,
                status_to=StackRunStatus.PENDING_RESUME.value,
                details={
                    "child_stack_run_id": child_stack_run_id,
                    "sequence": vm_state.call_sequence - 1,
                },
            )
            session.commit()
            return True

    def list_stale_frames(self, *, older_than: datetime) -> list[StackRunView]:
        """Frames stuck in processing or pending_resume since before ``older_than``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(StackRun)
                .where(
                    col(StackRun.status).in_(
                        [StackRunStatus.PROCESSING.value, StackRunStatus.PENDING_RESUME.value],
                    ),
                    col(StackRun.updated_at) < to_db_datetime(older_than),
                )
                .order_by(col(StackRun.updated_at).asc()),
            ).all()
        return [_to_stack_run_view(row) for row in rows]

    def record_event(
        self,
        *,
        task_run_id: str,
        stack_run_id: str | None,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an audit event that is not tied to a status transition."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_run_id=task_run_id,
                stack_run_id=stack_run_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    # -- task locks -----------------------------------------------------

    def try_acquire_task_lock(self, *, task_run_id: str, owner: str) -> bool:
        """Insert the chain's lock row; a conflicting insert means another owner holds it."""

        with Session(self.engine) as session:
            session.add(
                TaskLock(
                    task_run_id=task_run_id,
                    locked_at=to_db_datetime(utc_now()),
                    locked_by=owner,
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        return True

    def release_task_lock(self, *, task_run_id: str, owner: str | None = None) -> bool:
        """Delete the chain's lock row, optionally only when held by ``owner``."""

        conditions = [col(TaskLock.task_run_id) == task_run_id]
        if owner is not None:
            conditions.append(col(TaskLock.locked_by) == owner)
        with Session(self.engine) as session:
            result = session.exec(sa_delete(TaskLock).where(*conditions))
            session.commit()
            return result.rowcount == 1

    def get_task_lock(self, task_run_id: str) -> TaskLockView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(TaskLock).where(TaskLock.task_run_id == task_run_id),
            ).one_or_none()
        if row is None:
            return None
        return TaskLockView(
            task_run_id=row.task_run_id,
            locked_by=row.locked_by,
            locked_at=to_utc_aware_datetime(row.locked_at),
        )

    def release_stale_locks(self, *, older_than: datetime) -> list[str]:
        """Release locks that can no longer be released by normal completion.

        A lock is abandoned when it was taken before ``older_than`` and its
        chain has no frame processing, suspended or waiting to resume.
        """

        released: list[str] = []
        with Session(self.engine) as session:
            locks = session.exec(
                select(TaskLock).where(col(TaskLock.locked_at) < to_db_datetime(older_than)),
            ).all()
            for lock in locks:
                active = session.exec(
                    select(StackRun.seq)
                    .where(
                        StackRun.parent_task_run_id == lock.task_run_id,
                        col(StackRun.status).in_(_ACTIVE_CHAIN_STATUSES),
                    )
                    .limit(1),
                ).first()
                if active is not None:
                    continue
                result = session.exec(
                    sa_delete(TaskLock).where(
                        col(TaskLock.task_run_id) == lock.task_run_id,
                        col(TaskLock.locked_by) == lock.locked_by,
                    ),
                )
                if result.rowcount == 1:
                    self._add_event(
                        session=session,
                        task_run_id=lock.task_run_id,
                        stack_run_id=None,
                        event_type="stale_lock_released",
                        status_from=None,
                        status_to=None,
                        details={"locked_by": lock.locked_by},
                    )
                    released.append(lock.task_run_id)
            session.commit()
        return released

    # -- helpers --------------------------------------------------------

    def _task_run_id_of(self, *, session: Session, stack_run_id: str) -> str:
        task_run_id = session.exec(
            select(StackRun.parent_task_run_id).where(StackRun.id == stack_run_id),
        ).one_or_none()
        if task_run_id is None:
            raise RuntimeError(f"Stack run not found: {stack_run_id}")
        return task_run_id

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_run_id: str,
        stack_run_id: str | None,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            StackRunEvent(
                task_run_id=task_run_id,
                stack_run_id=stack_run_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _load_error(raw: str | None) -> FrameError | None:
    payload = load_json(raw)
    if payload is None:
        return None
    return FrameError.from_dict(payload)


def _to_task_run_view(row: TaskRun) -> TaskRunView:
    return TaskRunView(
        id=row.id,
        task_name=row.task_name,
        input=load_json(row.input),
        status=TaskRunStatus(row.status),
        result=load_json(row.result),
        error=_load_error(row.error),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_optional_aware(row.started_at),
        ended_at=_optional_aware(row.ended_at),
    )


def _to_stack_run_view(row: StackRun) -> StackRunView:
    vm_state = load_json(row.vm_state)
    return StackRunView(
        id=row.id,
        seq=row.seq or 0,
        parent_task_run_id=row.parent_task_run_id,
        parent_stack_run_id=row.parent_stack_run_id,
        service_name=row.service_name,
        method_name=row.method_name,
        args=load_json(row.args) or [],
        status=StackRunStatus(row.status),
        result=load_json(row.result),
        error=_load_error(row.error),
        vm_state=VmState.from_dict(vm_state) if isinstance(vm_state, dict) else None,
        waiting_on_stack_run_id=row.waiting_on_stack_run_id,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
        started_at=_optional_aware(row.started_at),
        ended_at=_optional_aware(row.ended_at),
    )


def _to_task_function_view(row: TaskFunction) -> TaskFunctionView:
    return TaskFunctionView(
        name=row.name,
        code=row.code,
        description=row.description,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
