"""Shared test fixtures."""

from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from sample_tasks import TASK_BODIES
from tasker.engine.executor.replay import ReplayExecutor, mapping_resolver
from tasker.engine.liveness import NullTrigger
from tasker.engine.models import StackRunStatus
from tasker.engine.proxy.local import LocalServiceProxy
from tasker.engine.proxy.registry import ServiceRegistry
from tasker.engine.repository import EngineRepository
from tasker.engine.services import TaskService
from tasker.storage.common import dump_json, to_db_datetime, utc_now
from tasker.storage.sqlmodel_models import StackRun


def _fail(*_args):
    raise RuntimeError("boom")


@pytest.fixture()
def repository(tmp_path: Path):
    repo = EngineRepository(tmp_path / "tasker.db")
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def insert_frame(repository: EngineRepository):
    """Insert a raw call frame, bypassing the engine, to build odd chain shapes."""

    def _insert(  # noqa: PLR0913
        *,
        task_run_id: str,
        status: StackRunStatus = StackRunStatus.PENDING,
        created_at: datetime | None = None,
        parent_stack_run_id: str | None = None,
        waiting_on_stack_run_id: str | None = None,
        method_name: str = "echo",
    ) -> str:
        frame_id = str(uuid4())
        timestamp = to_db_datetime(created_at or utc_now())
        with Session(repository.engine) as session:
            session.add(
                StackRun(
                    id=frame_id,
                    parent_task_run_id=task_run_id,
                    parent_stack_run_id=parent_stack_run_id,
                    service_name="database",
                    method_name=method_name,
                    args=dump_json(["x"]),
                    status=status.value,
                    waiting_on_stack_run_id=waiting_on_stack_run_id,
                    created_at=timestamp,
                    updated_at=timestamp,
                ),
            )
            session.commit()
        return frame_id

    return _insert


@pytest.fixture()
def backdate_frame(repository: EngineRepository):
    """Move a frame's ``updated_at`` into the past."""

    def _backdate(stack_run_id: str, seconds: int) -> None:
        with Session(repository.engine) as session:
            session.exec(
                sa_update(StackRun)
                .where(col(StackRun.id) == stack_run_id)
                .values(updated_at=to_db_datetime(utc_now() - timedelta(seconds=seconds))),
            )
            session.commit()

    return _backdate


@pytest.fixture()
def stranded_resume(service: TaskService, repository: EngineRepository):
    """Sequential task whose root was left in pending_resume by a worker that died.

    The first call completed and its result is already in the root's memo log.
    Returns ``(task_run_id, root_id)``.
    """

    service.register_task("T", "sequential")
    task_run_id = service.submit("T")
    service.tick()
    root, child = repository.list_stack_runs(task_run_id=task_run_id)
    assert repository.claim_frame(
        stack_run_id=child.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="crashed-worker",
    )
    assert repository.complete_frame(stack_run_id=child.id, result="first")
    assert repository.prepare_resume(
        stack_run_id=root.id,
        child_stack_run_id=child.id,
        service_name="database",
        method_name="first",
        result="first",
    )
    return task_run_id, root.id


@pytest.fixture()
def database_proxy() -> LocalServiceProxy:
    """Database service whose methods return their own name; ``fail`` raises."""

    return LocalServiceProxy(
        {
            "first": lambda: "first",
            "second": lambda: "second",
            "third": lambda: "third",
            "echo": lambda value: value,
            "fail": _fail,
        },
    )


@pytest.fixture()
def make_service(repository: EngineRepository, database_proxy: LocalServiceProxy):
    """Build task services sharing one store, e.g. to simulate several workers."""

    def _make(
        *,
        worker_id: str = "worker-1",
        trigger=None,
        propagation_depth_cap: int = 10,
        bodies=None,
    ) -> TaskService:
        return TaskService(
            repository=repository,
            executor=ReplayExecutor(mapping_resolver(bodies or TASK_BODIES)),
            services=ServiceRegistry({"database": database_proxy}),
            worker_id=worker_id,
            trigger=trigger or NullTrigger(),
            propagation_depth_cap=propagation_depth_cap,
        )

    return _make


@pytest.fixture()
def service(make_service) -> TaskService:
    return make_service()


class RecordingTrigger:
    """Trigger that records notifications without dispatching anything."""

    def __init__(self) -> None:
        self.dispatch = None
        self.notified: list[str | None] = []

    def bind(self, dispatch) -> None:
        self.dispatch = dispatch

    def notify(self, stack_run_id: str | None = None) -> bool:
        self.notified.append(stack_run_id)
        return True

    def close(self, timeout: float = 0.0) -> None:
        self.dispatch = None


@pytest.fixture()
def recording_trigger() -> RecordingTrigger:
    return RecordingTrigger()
