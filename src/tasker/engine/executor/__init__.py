"""Executor adapters that run task bodies with replay semantics."""

from tasker.engine.executor.base import (
    Completed,
    Errored,
    ExecutorAdapter,
    ExecutorOutcome,
    ExecutorRequest,
    Suspended,
)
from tasker.engine.executor.replay import (
    HostTools,
    ReplayExecutor,
    import_task_body,
    mapping_resolver,
)

__all__ = [
    "Completed",
    "Errored",
    "ExecutorAdapter",
    "ExecutorOutcome",
    "ExecutorRequest",
    "HostTools",
    "ReplayExecutor",
    "Suspended",
    "import_task_body",
    "mapping_resolver",
]
