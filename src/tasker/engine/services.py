"""Use-case services: submit tasks and drive dispatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from tasker.engine.errors import TaskNotFoundError
from tasker.engine.executor.base import ExecutorAdapter
from tasker.engine.liveness import DispatchTrigger, NullTrigger, PollingDriver
from tasker.engine.models import (
    DispatchResult,
    ErrorKind,
    FrameError,
    FrameOutcome,
    PropagationReport,
    StackRunStatus,
    TaskFunctionView,
    TaskRunDetails,
    TaskRunView,
    WatchdogReport,
)
from tasker.engine.propagation import DEFAULT_DEPTH_CAP
from tasker.engine.proxy.registry import ServiceRegistry
from tasker.engine.repository import EngineRepository
from tasker.engine.scheduler import (
    DEFAULT_RESUME_GRACE_SECONDS,
    DEFAULT_SCAN_LIMIT,
    FrameScheduler,
)
from tasker.storage.common import utc_now

logger = logging.getLogger(__name__)

_EXPIRABLE_STATUSES = (StackRunStatus.PROCESSING, StackRunStatus.PENDING_RESUME)


@dataclass(slots=True)
class SubmitTask:
    """High-level command to start a registered task."""

    task_name: str
    task_input: Any = None


class TaskService:
    """Entry points of the engine: submit, process one frame, tick, watchdog."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EngineRepository,
        executor: ExecutorAdapter,
        services: ServiceRegistry,
        worker_id: str,
        trigger: DispatchTrigger | None = None,
        propagation_depth_cap: int = DEFAULT_DEPTH_CAP,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
        resume_grace_seconds: float = DEFAULT_RESUME_GRACE_SECONDS,
    ) -> None:
        self.repository = repository
        self.trigger = trigger or NullTrigger()
        self.scheduler = FrameScheduler(
            repository=repository,
            executor=executor,
            services=services,
            trigger=self.trigger,
            worker_id=worker_id,
            propagation_depth_cap=propagation_depth_cap,
            scan_limit=scan_limit,
            resume_grace_seconds=resume_grace_seconds,
        )
        self.trigger.bind(self._dispatch_from_trigger)

    def close(self) -> None:
        """Wait for triggered dispatches; call before closing the store and proxies."""

        self.trigger.close()

    def register_task(
        self,
        name: str,
        code: str,
        description: str | None = None,
    ) -> TaskFunctionView:
        """Register (or replace) the code behind a task name."""

        if not name.strip():
            raise ValueError("Task name must not be empty")
        if not code.strip():
            raise ValueError("Task code must not be empty")
        return self.repository.upsert_task_function(
            name=name.strip(),
            code=code.strip(),
            description=description,
        )

    def submit(self, task_name: str, task_input: Any = None) -> str:
        """Create a task run with its root frame and trigger dispatch."""

        task_function = self.repository.get_task_function(task_name)
        if task_function is None:
            raise TaskNotFoundError(task_name)
        task_run, root = self.repository.create_task_run(
            task_name=task_name,
            task_input=task_input if task_input is not None else {},
            task_code=task_function.code,
        )
        logger.info("Task run %s submitted for %s (root %s)", task_run.id, task_name, root.id)
        self.trigger.notify(root.id)
        return task_run.id

    def submit_command(self, command: SubmitTask) -> str:
        return self.submit(command.task_name, command.task_input)

    def get_task_run(self, task_run_id: str) -> TaskRunView | None:
        return self.repository.get_task_run(task_run_id)

    def get_task_run_details(self, task_run_id: str) -> TaskRunDetails | None:
        return self.repository.get_task_run_details(task_run_id)

    def process_one(self, stack_run_id: str) -> DispatchResult:
        return self.scheduler.process_one(stack_run_id)

    def dispatch_next(self) -> DispatchResult:
        return self.scheduler.dispatch_next()

    def has_pending_work(self) -> bool:
        return self.repository.has_pending_frames(
            stranded_before=self.scheduler.stranded_cutoff(),
        )

    def tick(self) -> DispatchResult:
        """One polling step: dispatch the next frame if any is pending or stranded."""

        if not self.has_pending_work():
            return DispatchResult(processed=False, stack_run_id=None, reason="no_pending")
        return self.scheduler.dispatch_next()

    def run_until_idle(self, *, max_steps: int = 1_000) -> int:
        """Dispatch until no frame can be processed; returns processed frame count."""

        processed = 0
        for _ in range(max_steps):
            result = self.tick()
            if not result.processed:
                break
            processed += 1
        return processed

    def polling_driver(
        self,
        *,
        poll_interval_seconds: float = 3.0,
        max_consecutive_empty: int = 5,
        pause_seconds: float = 10.0,
    ) -> PollingDriver:
        return PollingDriver(
            has_pending=self.has_pending_work,
            dispatch_next=self.dispatch_next,
            poll_interval_seconds=poll_interval_seconds,
            max_consecutive_empty=max_consecutive_empty,
            pause_seconds=pause_seconds,
        )

    def expire_frame(self, stack_run_id: str, reason: str) -> PropagationReport | None:
        """Fail a frame stuck in processing/pending_resume and propagate the failure.

        Returns ``None`` when the frame is not in an expirable state.
        """

        frame = self.repository.get_stack_run(stack_run_id)
        if frame is None:
            raise RuntimeError(f"Stack run not found: {stack_run_id}")
        if frame.status not in _EXPIRABLE_STATUSES:
            logger.info("Frame %s is %s; not expired", frame.id, frame.status.value)
            return None

        error = FrameError(
            message=f"Frame expired while {frame.status.value}: {reason}",
            kind=ErrorKind.EXPIRED,
            caused_by=None if frame.is_task_body else frame.call_reference(),
        )
        if not self.repository.fail_frame(
            stack_run_id=frame.id,
            error=error,
            expected_status=frame.status,
        ):
            logger.info("Frame %s changed state before it could be expired", frame.id)
            return None
        logger.warning("Expired frame %s (%s)", frame.id, reason)
        return self.scheduler.propagator.on_terminal(
            frame,
            FrameOutcome.failed(error),
            persisted=True,
        )

    def run_watchdog(
        self,
        *,
        stale_frame_seconds: int,
        stale_lock_seconds: int,
    ) -> WatchdogReport:
        """Expire stale frames, then release locks nothing can release any more.

        Stale ``pending_resume`` frames are resumed, not expired.
        """

        report = WatchdogReport()
        now = utc_now()
        for frame in self.repository.list_stale_frames(
            older_than=now - timedelta(seconds=stale_frame_seconds),
        ):
            if frame.status is StackRunStatus.PENDING_RESUME:
                if self.scheduler.process_one(frame.id).processed:
                    report.resumed_frames.append(frame.id)
                continue
            propagated = self.expire_frame(
                frame.id,
                reason=f"no progress for more than {stale_frame_seconds}s",
            )
            if propagated is not None:
                report.expired_frames.append(frame.id)
        report.released_locks = self.repository.release_stale_locks(
            older_than=now - timedelta(seconds=stale_lock_seconds),
        )
        for task_run_id in report.released_locks:
            logger.warning("Released abandoned lock of chain %s", task_run_id)
        return report

    def _dispatch_from_trigger(self, stack_run_id: str | None) -> DispatchResult:
        if stack_run_id is not None:
            result = self.scheduler.process_one(stack_run_id)
            if result.processed or result.reason not in {"earlier_sibling_pending", "not_pending"}:
                return result
        return self.tick()
