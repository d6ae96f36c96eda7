from __future__ import annotations

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from tasker.engine.models import (
    ErrorKind,
    FrameError,
    FrameOutcome,
    StackRunStatus,
)
from tasker.engine.repository import EngineRepository
from tasker.storage.sqlmodel_models import StackRun

pytestmark = [
    allure.epic("Continuation Engine"),
    allure.feature("Completion Propagation"),
]

_BOOM = FrameError(message="boom", kind=ErrorKind.CALL_FAILURE)


def _point_waiting(repository: EngineRepository, stack_run_id: str, waiting_on: str) -> None:
    with Session(repository.engine) as session:
        session.exec(
            sa_update(StackRun)
            .where(col(StackRun.id) == stack_run_id)
            .values(waiting_on_stack_run_id=waiting_on),
        )
        session.commit()


def _failed_chain(repository: EngineRepository, insert_frame, length: int) -> list[str]:
    task_run, _ = repository.create_task_run(task_name="t", task_input={}, task_code="c")
    frames = [insert_frame(task_run_id=task_run.id, status=StackRunStatus.FAILED)]
    for _ in range(length - 1):
        frames.append(
            insert_frame(
                task_run_id=task_run.id,
                status=StackRunStatus.SUSPENDED_WAITING_CHILD,
                parent_stack_run_id=None,
                waiting_on_stack_run_id=frames[-1],
            ),
        )
    return frames


def test_cycle_in_waiting_pointers_aborts_the_walk(
    make_service,
    repository: EngineRepository,
    insert_frame,
    recording_trigger,
) -> None:
    service = make_service(trigger=recording_trigger)
    failed, waiter = _failed_chain(repository, insert_frame, length=2)
    _point_waiting(repository, failed, waiter)
    frame = repository.get_stack_run(failed)
    assert frame is not None

    report = service.scheduler.propagator.on_terminal(
        frame,
        FrameOutcome.failed(_BOOM),
        persisted=True,
    )

    assert report.aborted
    assert report.reason == "cycle"
    assert report.visited == [failed, waiter]
    waiter_frame = repository.get_stack_run(waiter)
    assert waiter_frame is not None
    assert waiter_frame.status is StackRunStatus.FAILED
    details = repository.get_task_run_details(frame.parent_task_run_id)
    assert details is not None
    aborted = [event for event in details.events if event.event_type == "propagation_aborted"]
    assert len(aborted) == 1
    assert aborted[0].details["reason"] == "cycle"
    assert recording_trigger.notified == [None]


def test_depth_cap_stops_long_chains(
    make_service,
    repository: EngineRepository,
    insert_frame,
) -> None:
    service = make_service(propagation_depth_cap=10)
    frames = _failed_chain(repository, insert_frame, length=12)
    start = repository.get_stack_run(frames[0])
    assert start is not None

    report = service.scheduler.propagator.on_terminal(
        start,
        FrameOutcome.failed(_BOOM),
        persisted=True,
    )

    assert report.aborted
    assert report.reason == "depth"
    assert report.visited == frames[:10]
    last = repository.get_stack_run(frames[-1])
    assert last is not None
    assert last.status is StackRunStatus.SUSPENDED_WAITING_CHILD


def test_failure_reaches_every_waiting_ancestor_within_the_cap(
    make_service,
    repository: EngineRepository,
    insert_frame,
) -> None:
    service = make_service(propagation_depth_cap=20)
    frames = _failed_chain(repository, insert_frame, length=5)
    start = repository.get_stack_run(frames[0])
    assert start is not None

    report = service.scheduler.propagator.on_terminal(
        start,
        FrameOutcome.failed(_BOOM),
        persisted=True,
    )

    assert not report.aborted
    assert report.visited == frames
    top = repository.get_stack_run(frames[-1])
    assert top is not None
    assert top.status is StackRunStatus.FAILED
    assert top.error is not None
    assert top.error.kind is ErrorKind.CHILD_FAILURE
    assert top.error.message.endswith("failed: boom")


def test_stale_outcome_is_not_persisted(
    service,
    repository: EngineRepository,
    insert_frame,
) -> None:
    task_run, _ = repository.create_task_run(task_name="t", task_input={}, task_code="c")
    pending = insert_frame(task_run_id=task_run.id)
    frame = repository.get_stack_run(pending)
    assert frame is not None

    report = service.scheduler.propagator.on_terminal(frame, FrameOutcome.completed("late"))

    assert not report.aborted
    assert report.reason == "stale"
    stored = repository.get_stack_run(pending)
    assert stored is not None
    assert stored.status is StackRunStatus.PENDING
    assert stored.result is None


def test_waiter_that_is_not_suspended_is_left_alone(
    service,
    repository: EngineRepository,
    insert_frame,
) -> None:
    task_run, _ = repository.create_task_run(task_name="t", task_input={}, task_code="c")
    failed = insert_frame(task_run_id=task_run.id, status=StackRunStatus.FAILED)
    bystander = insert_frame(
        task_run_id=task_run.id,
        status=StackRunStatus.COMPLETED,
        waiting_on_stack_run_id=failed,
    )
    frame = repository.get_stack_run(failed)
    assert frame is not None

    report = service.scheduler.propagator.on_terminal(
        frame,
        FrameOutcome.failed(_BOOM),
        persisted=True,
    )

    assert not report.aborted
    assert report.visited == [failed]
    stored = repository.get_stack_run(bystander)
    assert stored is not None
    assert stored.status is StackRunStatus.COMPLETED


def test_failed_outcome_requires_an_error() -> None:
    assert FrameOutcome.failed(_BOOM).require_error() is _BOOM

    with pytest.raises(RuntimeError, match="completed carries no error"):
        FrameOutcome.completed("ok").require_error()
