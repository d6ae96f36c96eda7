from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from tasker.engine.models import (
    CallDescriptor,
    ErrorKind,
    FrameError,
    StackRunStatus,
    TaskRunStatus,
)
from tasker.engine.repository import EngineRepository

pytestmark = [
    allure.epic("Continuation Engine"),
    allure.feature("Durable Store"),
]


def test_create_task_run_has_exactly_one_pending_root(repository: EngineRepository) -> None:
    task_run, root = repository.create_task_run(
        task_name="sequential",
        task_input={"pattern": "sequential"},
        task_code="sequential",
    )

    frames = repository.list_stack_runs(task_run_id=task_run.id)
    assert [frame.id for frame in frames] == [root.id]
    assert root.is_root
    assert root.is_task_body
    assert root.status is StackRunStatus.PENDING
    assert root.service_name == "tasks"
    assert root.method_name == "execute"
    assert root.args == ["sequential", {"pattern": "sequential"}]
    assert root.vm_state is not None
    assert root.vm_state.call_sequence == 0
    assert task_run.status is TaskRunStatus.QUEUED
    assert repository.has_pending_frames() is True


def test_claim_moves_task_run_to_processing_once(repository: EngineRepository) -> None:
    task_run, root = repository.create_task_run(
        task_name="t",
        task_input={},
        task_code="sequential",
    )

    claimed = repository.claim_frame(
        stack_run_id=root.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="worker-a",
    )
    assert claimed is not None
    assert claimed.status is StackRunStatus.PROCESSING
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at is not None

    second = repository.claim_frame(
        stack_run_id=root.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="worker-b",
    )
    assert second is None

    stored = repository.get_task_run(task_run.id)
    assert stored is not None
    assert stored.status is TaskRunStatus.PROCESSING

    with pytest.raises(ValueError, match="cannot be claimed"):
        repository.claim_frame(
            stack_run_id=root.id,
            expected_status=StackRunStatus.SUSPENDED_WAITING_CHILD,
            worker_id="worker-a",
        )


def test_suspend_creates_child_and_parks_parent_atomically(repository: EngineRepository) -> None:
    task_run, root = repository.create_task_run(task_name="t", task_input={}, task_code="c")
    claimed = repository.claim_frame(
        stack_run_id=root.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="worker-a",
    )
    assert claimed is not None and claimed.vm_state is not None

    child = repository.suspend_frame(
        frame=claimed,
        vm_state=claimed.vm_state,
        call=CallDescriptor(service_name="database", method_name="first", args=[]),
    )

    assert child is not None
    assert child.parent_stack_run_id == root.id
    assert child.parent_task_run_id == task_run.id
    assert child.status is StackRunStatus.PENDING
    assert child.vm_state is None
    parent = repository.get_stack_run(root.id)
    assert parent is not None
    assert parent.status is StackRunStatus.SUSPENDED_WAITING_CHILD
    assert parent.waiting_on_stack_run_id == child.id
    assert repository.find_waiter(child.id) == parent


def test_suspend_of_non_processing_frame_writes_nothing(repository: EngineRepository) -> None:
    task_run, root = repository.create_task_run(task_name="t", task_input={}, task_code="c")
    assert root.vm_state is not None

    child = repository.suspend_frame(
        frame=root,
        vm_state=root.vm_state,
        call=CallDescriptor(service_name="database", method_name="first", args=[]),
    )

    assert child is None
    frames = repository.list_stack_runs(task_run_id=task_run.id)
    assert len(frames) == 1
    assert frames[0].status is StackRunStatus.PENDING
    assert frames[0].waiting_on_stack_run_id is None


def test_prepare_resume_requires_matching_child(repository: EngineRepository) -> None:
    _, root = repository.create_task_run(task_name="t", task_input={}, task_code="c")
    claimed = repository.claim_frame(
        stack_run_id=root.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="worker-a",
    )
    assert claimed is not None and claimed.vm_state is not None
    child = repository.suspend_frame(
        frame=claimed,
        vm_state=claimed.vm_state,
        call=CallDescriptor(service_name="database", method_name="first", args=[]),
    )
    assert child is not None

    assert not repository.prepare_resume(
        stack_run_id=root.id,
        child_stack_run_id="someone-else",
        service_name="database",
        method_name="first",
        result="first",
    )
    assert repository.prepare_resume(
        stack_run_id=root.id,
        child_stack_run_id=child.id,
        service_name="database",
        method_name="first",
        result="first",
    )
    assert not repository.prepare_resume(
        stack_run_id=root.id,
        child_stack_run_id=child.id,
        service_name="database",
        method_name="first",
        result="first",
    )

    resumed = repository.get_stack_run(root.id)
    assert resumed is not None
    assert resumed.status is StackRunStatus.PENDING_RESUME
    assert resumed.waiting_on_stack_run_id is None
    assert resumed.vm_state is not None
    assert resumed.vm_state.call_sequence == 1
    memo = resumed.vm_state.memoized_results[0]
    assert (memo.sequence, memo.service_name, memo.method_name, memo.result) == (
        0,
        "database",
        "first",
        "first",
    )


def test_fail_frame_guards_waiting_pointer(repository: EngineRepository) -> None:
    _, root = repository.create_task_run(task_name="t", task_input={}, task_code="c")
    claimed = repository.claim_frame(
        stack_run_id=root.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="worker-a",
    )
    assert claimed is not None and claimed.vm_state is not None
    child = repository.suspend_frame(
        frame=claimed,
        vm_state=claimed.vm_state,
        call=CallDescriptor(service_name="database", method_name="fail", args=[]),
    )
    assert child is not None
    error = FrameError(message="boom", kind=ErrorKind.CHILD_FAILURE)

    assert not repository.fail_frame(
        stack_run_id=root.id,
        error=error,
        expected_status=StackRunStatus.SUSPENDED_WAITING_CHILD,
        waiting_on_stack_run_id="not-the-child",
    )
    assert repository.fail_frame(
        stack_run_id=root.id,
        error=error,
        expected_status=StackRunStatus.SUSPENDED_WAITING_CHILD,
        waiting_on_stack_run_id=child.id,
    )
    failed = repository.get_stack_run(root.id)
    assert failed is not None
    assert failed.status is StackRunStatus.FAILED
    assert failed.error == error
    assert failed.waiting_on_stack_run_id is None


def test_dispatch_candidates_are_oldest_pending_frame_per_chain(
    repository: EngineRepository,
    insert_frame,
) -> None:
    first_run, first_root = repository.create_task_run(task_name="a", task_input={}, task_code="c")
    _, second_root = repository.create_task_run(
        task_name="b",
        task_input={},
        task_code="c",
    )
    later = datetime.now(tz=UTC) + timedelta(seconds=5)
    newer_sibling = insert_frame(task_run_id=first_run.id, created_at=later)

    candidates = repository.list_dispatch_candidates(limit=10)

    assert [frame.id for frame in candidates] == [first_root.id, second_root.id]
    sibling = repository.get_stack_run(newer_sibling)
    assert sibling is not None
    assert repository.has_earlier_pending_sibling(sibling) is True
    assert repository.has_earlier_pending_sibling(first_root) is False


def test_same_timestamp_siblings_are_ordered_by_insertion(
    repository: EngineRepository,
    insert_frame,
) -> None:
    task_run, root = repository.create_task_run(task_name="a", task_input={}, task_code="c")
    repository.claim_frame(
        stack_run_id=root.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="worker-a",
    )
    created_at = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)
    older = insert_frame(task_run_id=task_run.id, created_at=created_at)
    newer = insert_frame(task_run_id=task_run.id, created_at=created_at)

    candidates = repository.list_dispatch_candidates(limit=10)

    assert [frame.id for frame in candidates] == [older]
    newer_frame = repository.get_stack_run(newer)
    assert newer_frame is not None
    assert repository.has_earlier_pending_sibling(newer_frame) is True


def test_task_lock_is_exclusive_and_owner_scoped(repository: EngineRepository) -> None:
    task_run, _ = repository.create_task_run(task_name="a", task_input={}, task_code="c")

    assert repository.try_acquire_task_lock(task_run_id=task_run.id, owner="worker-a:1")
    assert not repository.try_acquire_task_lock(task_run_id=task_run.id, owner="worker-b:1")
    assert not repository.release_task_lock(task_run_id=task_run.id, owner="worker-b:1")

    lock = repository.get_task_lock(task_run.id)
    assert lock is not None
    assert lock.locked_by == "worker-a:1"

    assert repository.release_task_lock(task_run_id=task_run.id, owner="worker-a:1")
    assert repository.get_task_lock(task_run.id) is None
    assert repository.try_acquire_task_lock(task_run_id=task_run.id, owner="worker-b:1")


def test_task_lock_admits_one_owner_across_threads(tmp_path: Path) -> None:
    db_path = tmp_path / "locks.db"
    setup = EngineRepository(db_path)
    setup.init_schema()
    task_run, _ = setup.create_task_run(task_name="a", task_input={}, task_code="c")
    setup.close()

    workers = 8
    barrier = threading.Barrier(workers)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _contend(index: int) -> None:
        repository = EngineRepository(db_path)
        try:
            barrier.wait(timeout=5)
            acquired = repository.try_acquire_task_lock(
                task_run_id=task_run.id,
                owner=f"worker-{index}",
            )
            with results_lock:
                results.append(acquired)
        finally:
            repository.close()

    threads = [threading.Thread(target=_contend, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert len(results) == workers
    assert results.count(True) == 1


def test_finish_task_run_is_terminal_once(repository: EngineRepository) -> None:
    task_run, _ = repository.create_task_run(task_name="a", task_input={}, task_code="c")

    assert repository.finish_task_run(
        task_run_id=task_run.id,
        status=TaskRunStatus.COMPLETED,
        result=["done"],
    )
    assert not repository.finish_task_run(
        task_run_id=task_run.id,
        status=TaskRunStatus.FAILED,
        error=FrameError(message="late", kind=ErrorKind.EXPIRED),
    )
    stored = repository.get_task_run(task_run.id)
    assert stored is not None
    assert stored.status is TaskRunStatus.COMPLETED
    assert stored.result == ["done"]
    assert stored.error is None
    assert stored.ended_at is not None

    with pytest.raises(ValueError, match="Unsupported task run terminal status"):
        repository.finish_task_run(task_run_id=task_run.id, status=TaskRunStatus.PROCESSING)
    with pytest.raises(RuntimeError, match="Task run not found"):
        repository.finish_task_run(task_run_id="missing", status=TaskRunStatus.COMPLETED)


def test_upsert_task_function_replaces_code(repository: EngineRepository) -> None:
    repository.upsert_task_function(name="report", code="pkg.tasks:v1", description="first")
    updated = repository.upsert_task_function(name="report", code="pkg.tasks:v2")

    assert updated.code == "pkg.tasks:v2"
    assert updated.description is None
    assert [item.name for item in repository.list_task_functions()] == ["report"]
    assert repository.get_task_function("missing") is None


def test_task_run_details_include_frames_and_events(repository: EngineRepository) -> None:
    task_run, root = repository.create_task_run(task_name="a", task_input={}, task_code="c")
    repository.claim_frame(
        stack_run_id=root.id,
        expected_status=StackRunStatus.PENDING,
        worker_id="worker-a",
    )

    details = repository.get_task_run_details(task_run.id)

    assert details is not None
    assert [frame.id for frame in details.frames] == [root.id]
    assert [event.event_type for event in details.events] == [
        "task_run_queued",
        "created",
        "task_run_processing",
        "claimed",
    ]
    assert details.events[-1].details == {"worker_id": "worker-a"}
    assert repository.get_task_run_details("missing") is None
