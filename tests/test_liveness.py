from __future__ import annotations

import threading
import time

import allure

from tasker.engine.liveness import NullTrigger, PollingDriver, ThrottledTrigger
from tasker.engine.models import DispatchResult, TaskRunStatus
from tasker.engine.services import TaskService

pytestmark = [
    allure.epic("Continuation Engine"),
    allure.feature("Liveness"),
]


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _run_inline(target) -> None:
    target()


def test_polling_alone_completes_task_when_trigger_is_suppressed(service: TaskService) -> None:
    assert isinstance(service.trigger, NullTrigger)
    service.register_task("T", "sequential")
    task_run_id = service.submit("T", {"pattern": "sequential"})
    sleeps: list[float] = []
    driver = PollingDriver(
        has_pending=service.has_pending_work,
        dispatch_next=service.dispatch_next,
        poll_interval_seconds=3.0,
        max_consecutive_empty=2,
        pause_seconds=10.0,
        sleep=sleeps.append,
    )

    summary = driver.run_loop(max_polls=10)

    task_run = service.get_task_run(task_run_id)
    assert task_run is not None
    assert task_run.status is TaskRunStatus.COMPLETED
    assert task_run.result == ["first", "second", "third"]
    assert summary.processed == 4
    assert summary.errors == 0
    assert summary.polls == 10
    assert summary.pauses >= 1
    assert 10.0 in sleeps


def test_polling_driver_pauses_after_consecutive_empty_polls() -> None:
    sleeps: list[float] = []
    driver = PollingDriver(
        has_pending=lambda: False,
        dispatch_next=lambda: DispatchResult(processed=False, stack_run_id=None, reason="x"),
        poll_interval_seconds=1.0,
        max_consecutive_empty=3,
        pause_seconds=30.0,
        sleep=sleeps.append,
    )

    summary = driver.run_loop(max_polls=7)

    assert summary.polls == 7
    assert summary.empty_polls == 7
    assert summary.dispatched == 0
    assert summary.pauses == 2
    assert sleeps == [1.0, 1.0, 30.0, 1.0, 1.0, 30.0]


def test_polling_driver_survives_dispatch_errors() -> None:
    attempts = {"count": 0}

    def _dispatch() -> DispatchResult:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("database is locked")
        return DispatchResult(processed=True, stack_run_id="frame-1", reason="completed")

    driver = PollingDriver(
        has_pending=lambda: True,
        dispatch_next=_dispatch,
        sleep=lambda _: None,
    )

    summary = driver.run_loop(max_polls=3)

    assert summary.errors == 1
    assert summary.processed == 2
    assert driver.last_result is not None
    assert driver.last_result.stack_run_id == "frame-1"


def test_poll_once_reports_whether_work_existed() -> None:
    dispatched: list[str] = []
    driver = PollingDriver(
        has_pending=lambda: bool(not dispatched),
        dispatch_next=lambda: dispatched.append("x")
        or DispatchResult(processed=True, stack_run_id="x", reason="completed"),
        sleep=lambda _: None,
    )

    assert driver.poll_once() is True
    assert driver.poll_once() is False
    assert driver.last_result is None
    assert dispatched == ["x"]


def test_throttled_trigger_drops_notifications_within_interval() -> None:
    clock = _FakeClock()
    dispatched: list[str | None] = []
    trigger = ThrottledTrigger(min_interval_seconds=1.0, clock=clock, spawn=_run_inline)
    trigger.bind(dispatched.append)

    assert trigger.notify("a") is True
    clock.now += 0.5
    assert trigger.notify("b") is False
    clock.now += 0.6
    assert trigger.notify("c") is True

    assert dispatched == ["a", "c"]
    assert trigger.accepted == 2
    assert trigger.dropped == 1


def test_unbound_trigger_ignores_notifications() -> None:
    trigger = ThrottledTrigger(spawn=_run_inline)

    assert trigger.notify("a") is False
    assert trigger.accepted == 0


def test_trigger_swallows_dispatch_failures() -> None:
    def _explode(_: str | None) -> None:
        raise RuntimeError("dispatch failed")

    trigger = ThrottledTrigger(min_interval_seconds=0.0, spawn=_run_inline)
    trigger.bind(_explode)

    assert trigger.notify("a") is True
    assert trigger.notify("b") is True


def test_trigger_drives_a_task_to_completion(make_service) -> None:
    clock = _FakeClock()
    trigger = ThrottledTrigger(min_interval_seconds=0.0, clock=clock, spawn=_run_inline)
    service = make_service(trigger=trigger)
    service.register_task("T", "sequential")

    task_run_id = service.submit("T")

    task_run = service.get_task_run(task_run_id)
    assert task_run is not None
    assert task_run.status is TaskRunStatus.COMPLETED
    assert task_run.result == ["first", "second", "third"]
    assert not service.has_pending_work()


def test_notifications_are_recorded_for_suspensions(make_service, recording_trigger) -> None:
    service = make_service(trigger=recording_trigger)
    service.register_task("T", "sequential")
    task_run_id = service.submit("T")

    result = service.tick()

    assert recording_trigger.dispatch is not None
    assert recording_trigger.notified[0] is not None
    assert recording_trigger.notified[1] != recording_trigger.notified[0]
    assert result.reason == "suspended_waiting_child"
    assert service.get_task_run(task_run_id) is not None


def test_close_waits_for_running_dispatch_and_stops_accepting() -> None:
    started = threading.Event()
    finished: list[str | None] = []

    def _slow_dispatch(stack_run_id: str | None) -> None:
        started.set()
        time.sleep(0.2)
        finished.append(stack_run_id)

    trigger = ThrottledTrigger(min_interval_seconds=0.0)
    trigger.bind(_slow_dispatch)

    assert trigger.notify("a") is True
    assert started.wait(timeout=5)
    trigger.close(timeout=5)

    assert finished == ["a"]
    assert trigger.notify("b") is False
    assert trigger.accepted == 1


def test_service_close_closes_its_trigger(make_service) -> None:
    trigger = ThrottledTrigger(min_interval_seconds=0.0, spawn=_run_inline)
    service = make_service(trigger=trigger)
    service.register_task("T", "no_calls")

    service.close()
    task_run_id = service.submit("T", {"value": 1})

    task_run = service.get_task_run(task_run_id)
    assert task_run is not None
    assert task_run.status is TaskRunStatus.QUEUED
    assert trigger.accepted == 0
