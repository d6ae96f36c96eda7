"""Domain models for task runs, continuation frames and dispatch outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

TASK_SERVICE_NAME = "tasks"
TASK_METHOD_NAME = "execute"


class TaskRunStatus(str, Enum):
    """User-visible task invocation lifecycle."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StackRunStatus(str, Enum):
    """Continuation frame lifecycle."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUSPENDED_WAITING_CHILD = "suspended_waiting_child"
    PENDING_RESUME = "pending_resume"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STACK_RUN_STATUSES = frozenset({StackRunStatus.COMPLETED, StackRunStatus.FAILED})
TERMINAL_TASK_RUN_STATUSES = frozenset({TaskRunStatus.COMPLETED, TaskRunStatus.FAILED})


class ErrorKind(str, Enum):
    """Origin of a stored frame error."""

    CALL_FAILURE = "call_failure"
    ADAPTER_FAILURE = "adapter_failure"
    CHILD_FAILURE = "child_failure"
    EXPIRED = "expired"


@dataclass(slots=True)
class CallReference:
    """Identifies the service call frame an error originated from."""

    stack_run_id: str
    service_name: str
    method_name: str

    def to_dict(self) -> dict[str, str]:
        return {
            "stack_run_id": self.stack_run_id,
            "service_name": self.service_name,
            "method_name": self.method_name,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> CallReference:
        return cls(
            stack_run_id=str(payload["stack_run_id"]),
            service_name=str(payload["service_name"]),
            method_name=str(payload["method_name"]),
        )


@dataclass(slots=True)
class FrameError:
    """Structured error stored on failed frames and task runs."""

    message: str
    kind: ErrorKind
    caused_by: CallReference | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "message": self.message,
            "kind": self.kind.value,
            "caused_by": self.caused_by.to_dict() if self.caused_by is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> FrameError:
        if not isinstance(payload, dict):
            return cls(message=str(payload), kind=ErrorKind.ADAPTER_FAILURE)
        caused_by = payload.get("caused_by")
        try:
            kind = ErrorKind(payload.get("kind", ErrorKind.ADAPTER_FAILURE.value))
        except ValueError:
            kind = ErrorKind.ADAPTER_FAILURE
        return cls(
            message=str(payload.get("message", "")),
            kind=kind,
            caused_by=CallReference.from_dict(caused_by) if isinstance(caused_by, dict) else None,
        )


@dataclass(slots=True)
class MemoizedResult:
    """Result of one completed external call, keyed by its call sequence."""

    sequence: int
    service_name: str
    method_name: str
    result: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "sequence": self.sequence,
            "service_name": self.service_name,
            "method_name": self.method_name,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> MemoizedResult:
        return cls(
            sequence=int(payload["sequence"]),
            service_name=str(payload["service_name"]),
            method_name=str(payload["method_name"]),
            result=payload.get("result"),
        )


@dataclass(slots=True)
class VmState:
    """Resume payload of a task-body frame."""

    task_code: str
    task_name: str
    task_input: Any
    memoized_results: list[MemoizedResult] = field(default_factory=list)

    @property
    def call_sequence(self) -> int:
        return len(self.memoized_results)

    def with_result(self, *, service_name: str, method_name: str, result: Any) -> VmState:
        """Return a copy with one more memoized call appended."""

        memo = MemoizedResult(
            sequence=self.call_sequence,
            service_name=service_name,
            method_name=method_name,
            result=result,
        )
        return VmState(
            task_code=self.task_code,
            task_name=self.task_name,
            task_input=self.task_input,
            memoized_results=[*self.memoized_results, memo],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_code": self.task_code,
            "task_name": self.task_name,
            "task_input": self.task_input,
            "memoized_results": [item.to_dict() for item in self.memoized_results],
            "call_sequence": self.call_sequence,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> VmState:
        return cls(
            task_code=str(payload["task_code"]),
            task_name=str(payload["task_name"]),
            task_input=payload.get("task_input"),
            memoized_results=[
                MemoizedResult.from_dict(item) for item in payload.get("memoized_results") or []
            ],
        )


@dataclass(slots=True)
class CallDescriptor:
    """External call requested by a suspending task body."""

    service_name: str
    method_name: str
    args: list[Any] = field(default_factory=list)

    @property
    def is_nested_task(self) -> bool:
        return self.service_name == TASK_SERVICE_NAME and self.method_name == TASK_METHOD_NAME


@dataclass(slots=True)
class TaskRunView:
    """Readable task run view for CLI and dispatch logic."""

    id: str
    task_name: str
    input: Any
    status: TaskRunStatus
    result: Any
    error: FrameError | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    ended_at: datetime | None


@dataclass(slots=True)
class StackRunView:
    """Readable continuation frame view."""

    id: str
    seq: int
    parent_task_run_id: str
    parent_stack_run_id: str | None
    service_name: str
    method_name: str
    args: list[Any]
    status: StackRunStatus
    result: Any
    error: FrameError | None
    vm_state: VmState | None
    waiting_on_stack_run_id: str | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    ended_at: datetime | None

    @property
    def is_task_body(self) -> bool:
        return self.vm_state is not None

    @property
    def is_root(self) -> bool:
        return self.parent_stack_run_id is None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STACK_RUN_STATUSES

    def call_reference(self) -> CallReference:
        return CallReference(
            stack_run_id=self.id,
            service_name=self.service_name,
            method_name=self.method_name,
        )


@dataclass(slots=True)
class StackRunEventView:
    """Frame event entry for audit trail."""

    event_id: int
    task_run_id: str
    stack_run_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskRunDetails:
    """Task run with its frames and event stream."""

    task_run: TaskRunView
    frames: list[StackRunView]
    events: list[StackRunEventView]


@dataclass(slots=True)
class TaskFunctionView:
    """Registered task code."""

    name: str
    code: str
    description: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskLockView:
    """Exclusive ownership marker of one task chain."""

    task_run_id: str
    locked_by: str
    locked_at: datetime


@dataclass(slots=True)
class FrameOutcome:
    """Result of executing one frame."""

    status: StackRunStatus
    result: Any = None
    error: FrameError | None = None
    child_stack_run_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STACK_RUN_STATUSES

    def require_error(self) -> FrameError:
        if self.error is None:
            raise RuntimeError(f"Frame outcome {self.status.value} carries no error")
        return self.error

    @classmethod
    def completed(cls, result: Any) -> FrameOutcome:
        return cls(status=StackRunStatus.COMPLETED, result=result)

    @classmethod
    def failed(cls, error: FrameError) -> FrameOutcome:
        return cls(status=StackRunStatus.FAILED, error=error)

    @classmethod
    def suspended(cls, child_stack_run_id: str) -> FrameOutcome:
        return cls(
            status=StackRunStatus.SUSPENDED_WAITING_CHILD,
            child_stack_run_id=child_stack_run_id,
        )


@dataclass(slots=True)
class DispatchResult:
    """Outcome of one scheduler pass."""

    processed: bool
    stack_run_id: str | None
    reason: str


@dataclass(slots=True)
class PropagationReport:
    """Frames touched by one propagation walk."""

    visited: list[str] = field(default_factory=list)
    aborted: bool = False
    reason: str | None = None


@dataclass(slots=True)
class WatchdogReport:
    """Frames expired or resumed and abandoned locks released by one watchdog pass."""

    expired_frames: list[str] = field(default_factory=list)
    resumed_frames: list[str] = field(default_factory=list)
    released_locks: list[str] = field(default_factory=list)
