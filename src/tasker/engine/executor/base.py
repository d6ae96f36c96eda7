"""Executor adapter interface for task-body execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from tasker.engine.models import MemoizedResult


@dataclass(slots=True)
class ExecutorRequest:
    """Inputs required to run (or replay) one task body."""

    task_code: str
    task_name: str
    task_input: Any
    memoized_results: list[MemoizedResult] = field(default_factory=list)
    stack_run_id: str | None = None
    task_run_id: str | None = None


@dataclass(slots=True)
class Completed:
    """The task body returned."""

    result: Any


@dataclass(slots=True)
class Suspended:
    """The task body attempted an external call with no memoized result."""

    service_name: str
    method_path: str
    args: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class Errored:
    """The task body raised or could not be loaded."""

    error: str


ExecutorOutcome = Completed | Suspended | Errored


class ExecutorAdapter(Protocol):
    """Protocol implemented by task-body runners."""

    def run(self, request: ExecutorRequest) -> ExecutorOutcome:
        """Run the task body from its start, replaying memoized calls."""
