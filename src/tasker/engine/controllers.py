"""Controllers for engine CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from tasker.config import Settings
from tasker.engine.executor.replay import ReplayExecutor
from tasker.engine.liveness import DispatchTrigger, NullTrigger, ThrottledTrigger
from tasker.engine.models import StackRunView, TaskRunStatus
from tasker.engine.proxy.registry import ServiceRegistry
from tasker.engine.proxy.wrapped import WrappedServiceProxy
from tasker.engine.repository import EngineRepository
from tasker.engine.services import TaskService


@dataclass(slots=True)
class TaskRegisterCommand:
    """CLI input for task registration."""

    db_path: Path | None
    name: str
    code: str
    description: str | None


@dataclass(slots=True)
class TaskSubmitCommand:
    """CLI input for task submission."""

    db_path: Path | None
    name: str
    input_json: str | None


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task run inspection."""

    db_path: Path | None
    task_run_id: str


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task run listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for the polling worker."""

    db_path: Path | None
    once: bool
    max_polls: int | None


@dataclass(slots=True)
class WorkerProcessCommand:
    """CLI input for processing one explicit frame."""

    db_path: Path | None
    stack_run_id: str


@dataclass(slots=True)
class WatchdogCommand:
    """CLI input for one watchdog pass."""

    db_path: Path | None
    stale_seconds: int | None


class EngineCliController:
    """Translate CLI commands into task service calls and printable lines."""

    def register_task(self, command: TaskRegisterCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _task_service(settings, trigger=NullTrigger()) as service:
            task_function = service.register_task(
                command.name,
                command.code,
                description=command.description,
            )
        return [f"Task registered: name={task_function.name} code={task_function.code}"]

    def submit_task(self, command: TaskSubmitCommand) -> list[str]:
        settings = _settings(command.db_path)
        task_input = _parse_input(command.input_json)
        with _task_service(settings, trigger=NullTrigger()) as service:
            task_run_id = service.submit(command.name, task_input)
        return [f"Task run queued: task_run_id={task_run_id} task={command.name}"]

    def list_task_runs(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = TaskRunStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            task_runs = repository.list_task_runs(status=status_filter, limit=command.limit)

        lines = [f"Task runs: {len(task_runs)}"]
        for task_run in task_runs:
            lines.append(
                f"  {task_run.id} task={task_run.task_name} status={task_run.status.value} "
                f"created_at={task_run.created_at.isoformat()}",
            )
        return lines

    def inspect_task_run(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_run_details(command.task_run_id)
        if details is None:
            return [f"Task run not found: {command.task_run_id}"]

        task_run = details.task_run
        lines = [
            f"Task run: {task_run.id}",
            f"Task: {task_run.task_name}",
            f"Status: {task_run.status.value}",
            f"Input: {_to_json(task_run.input)}",
            f"Result: {_to_json(task_run.result) if task_run.result is not None else '-'}",
            f"Error: {task_run.error.message if task_run.error is not None else '-'}",
            f"Frames: {len(details.frames)}",
        ]
        for frame in details.frames:
            lines.append(f"  {_describe_frame(frame)}")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.stack_run_id or '-'} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}",
            )
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.db_path)
        trigger = NullTrigger() if command.once else None
        with _task_service(settings, trigger=trigger) as service:
            if command.once:
                result = service.tick()
                return [
                    f"Worker tick: processed={result.processed} "
                    f"stack_run_id={result.stack_run_id or '-'} reason={result.reason}",
                ]
            driver = service.polling_driver(
                poll_interval_seconds=settings.liveness.poll_interval_seconds,
                max_consecutive_empty=settings.liveness.poll_max_consecutive_empty,
                pause_seconds=settings.liveness.poll_pause_seconds,
            )
            summary = driver.run_loop(max_polls=command.max_polls)
        return [
            "Worker summary: "
            f"polls={summary.polls} dispatched={summary.dispatched} "
            f"processed={summary.processed} empty_polls={summary.empty_polls} "
            f"pauses={summary.pauses} errors={summary.errors}",
        ]

    def process_frame(self, command: WorkerProcessCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _task_service(settings, trigger=NullTrigger()) as service:
            result = service.process_one(command.stack_run_id)
        return [
            f"Frame {command.stack_run_id}: processed={result.processed} reason={result.reason}",
        ]

    def watchdog(self, command: WatchdogCommand) -> list[str]:
        settings = _settings(command.db_path)
        stale_frame_seconds = command.stale_seconds or settings.worker.stale_frame_seconds
        stale_lock_seconds = command.stale_seconds or settings.worker.stale_lock_seconds
        with _task_service(settings, trigger=NullTrigger()) as service:
            report = service.run_watchdog(
                stale_frame_seconds=stale_frame_seconds,
                stale_lock_seconds=stale_lock_seconds,
            )
        lines = [
            f"Watchdog: expired_frames={len(report.expired_frames)} "
            f"released_locks={len(report.released_locks)} "
            f"resumed_frames={len(report.resumed_frames)}",
        ]
        lines.extend(f"  expired frame {frame_id}" for frame_id in report.expired_frames)
        lines.extend(f"  resumed frame {frame_id}" for frame_id in report.resumed_frames)
        lines.extend(f"  released lock {task_run_id}" for task_run_id in report.released_locks)
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_input(raw: str | None) -> Any:
    if raw is None or not raw.strip():
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Task input must be valid JSON: {error}") from error


def _to_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _describe_frame(frame: StackRunView) -> str:
    parts = [
        frame.id,
        f"{frame.service_name}.{frame.method_name}",
        f"status={frame.status.value}",
        f"parent={frame.parent_stack_run_id or '-'}",
    ]
    if frame.waiting_on_stack_run_id is not None:
        parts.append(f"waiting_on={frame.waiting_on_stack_run_id}")
    if frame.vm_state is not None:
        parts.append(f"memoized={frame.vm_state.call_sequence}")
    if frame.error is not None:
        parts.append(f"error={frame.error.message}")
    return " ".join(parts)


@contextmanager
def _repository(settings: Settings) -> Iterator[EngineRepository]:
    repository = EngineRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.engine.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _task_service(
    settings: Settings,
    *,
    trigger: DispatchTrigger | None = None,
) -> Iterator[TaskService]:
    if trigger is None:
        trigger = (
            ThrottledTrigger(min_interval_seconds=settings.liveness.trigger_min_interval_seconds)
            if settings.liveness.trigger_enabled
            else NullTrigger()
        )
    proxy = WrappedServiceProxy(
        base_url=settings.services.base_url,
        auth_token=settings.services.auth_token,
        timeout_seconds=settings.services.timeout_seconds,
        max_retries=settings.services.max_retries,
    )
    with _repository(settings) as repository, proxy:
        service = TaskService(
            repository=repository,
            executor=ReplayExecutor(),
            services=ServiceRegistry.with_default(proxy),
            worker_id=settings.worker.worker_id,
            trigger=trigger,
            propagation_depth_cap=settings.engine.propagation_depth_cap,
            scan_limit=settings.engine.dispatch_scan_limit,
            resume_grace_seconds=settings.engine.resume_grace_seconds,
        )
        try:
            yield service
        finally:
            service.close()
