"""Reference executor: runs Python task bodies by replaying memoized calls.

A task body is a callable ``body(task_input, tools)``. Every external call it
makes goes through ``tools``. Calls that already have a memoized result return
it synchronously. The first call without one stops the body and is reported
as ``Suspended``; the engine persists it as a child frame and re-runs the body
from the start once the child has completed.
"""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable, Mapping
from typing import Any

from tasker.engine.errors import ReplayMismatchError
from tasker.engine.executor.base import (
    Completed,
    Errored,
    ExecutorOutcome,
    ExecutorRequest,
    Suspended,
)
from tasker.engine.models import TASK_METHOD_NAME, TASK_SERVICE_NAME, MemoizedResult

logger = logging.getLogger(__name__)

TaskBody = Callable[[Any, "HostTools"], Any]
TaskResolver = Callable[[str], TaskBody]


class _SuspendSignal(BaseException):
    """Unwinds the task body at the first unmemoized call.

    Derives from ``BaseException`` so that ``except Exception`` in task code
    does not intercept it.
    """

    def __init__(self, suspended: Suspended) -> None:
        super().__init__(f"{suspended.service_name}.{suspended.method_path}")
        self.suspended = suspended


class _ServiceHandle:
    """Attribute chain over one service, e.g. ``tools.service("openai").chat.create(...)``."""

    def __init__(self, tools: HostTools, service_name: str, path: tuple[str, ...] = ()) -> None:
        self._tools = tools
        self._service_name = service_name
        self._path = path

    def __getattr__(self, name: str) -> _ServiceHandle:
        if name.startswith("_"):
            raise AttributeError(name)
        return _ServiceHandle(self._tools, self._service_name, (*self._path, name))

    def __call__(self, *args: Any) -> Any:
        if not self._path:
            raise TypeError(f"Service {self._service_name!r} needs a method path before calling")
        return self._tools.call(self._service_name, ".".join(self._path), *args)


class HostTools:
    """Host API handed to a task body for one replay."""

    def __init__(self, memoized_results: list[MemoizedResult]) -> None:
        self._memoized = sorted(memoized_results, key=lambda item: item.sequence)
        self._position = 0

    @property
    def calls_made(self) -> int:
        return self._position

    def call(self, service_name: str, method_path: str, *args: Any) -> Any:
        """Perform an external call, or return its memoized result on replay."""

        position = self._position
        self._position += 1
        if position < len(self._memoized):
            memo = self._memoized[position]
            if (memo.service_name, memo.method_name) != (service_name, method_path):
                raise ReplayMismatchError(
                    sequence=position,
                    expected=(memo.service_name, memo.method_name),
                    actual=(service_name, method_path),
                )
            return memo.result
        raise _SuspendSignal(
            Suspended(service_name=service_name, method_path=method_path, args=list(args)),
        )

    def service(self, service_name: str) -> _ServiceHandle:
        return _ServiceHandle(self, service_name)

    def run_task(self, task_name: str, task_input: Any = None) -> Any:
        """Run a registered task as a nested call and return its result."""

        return self.call(
            TASK_SERVICE_NAME,
            TASK_METHOD_NAME,
            task_name,
            task_input if task_input is not None else {},
        )


def import_task_body(task_code: str) -> TaskBody:
    """Resolve ``"package.module:function"`` to a task body callable."""

    module_name, separator, attribute = task_code.partition(":")
    if not separator or not module_name or not attribute:
        raise ValueError(f"Task code must look like 'module:function', got {task_code!r}")
    module = importlib.import_module(module_name)
    body = module
    for part in attribute.split("."):
        body = getattr(body, part)
    if not callable(body):
        raise ValueError(f"Task code {task_code!r} does not reference a callable")
    return body


def mapping_resolver(bodies: Mapping[str, TaskBody]) -> TaskResolver:
    """Resolve task code from an in-process table, falling back to imports."""

    def resolve(task_code: str) -> TaskBody:
        body = bodies.get(task_code)
        if body is not None:
            return body
        return import_task_body(task_code)

    return resolve


class ReplayExecutor:
    """Run a task body from its start against the memoized call log."""

    def __init__(self, resolver: TaskResolver = import_task_body) -> None:
        self._resolver = resolver

    def run(self, request: ExecutorRequest) -> ExecutorOutcome:
        try:
            body = self._resolver(request.task_code)
        except (ImportError, AttributeError, ValueError, KeyError) as error:
            return Errored(error=f"Cannot load task {request.task_name!r}: {error}")

        tools = HostTools(request.memoized_results)
        try:
            result = body(request.task_input, tools)
        except _SuspendSignal as signal:
            logger.debug(
                "Task %s suspended at call #%d (%s.%s)",
                request.task_name,
                tools.calls_made - 1,
                signal.suspended.service_name,
                signal.suspended.method_path,
            )
            return signal.suspended
        except ReplayMismatchError as error:
            return Errored(error=str(error))
        except Exception as error:  # noqa: BLE001
            return Errored(error=f"{type(error).__name__}: {error}")

        if tools.calls_made < len(request.memoized_results):
            logger.warning(
                "Task %s returned after %d calls but %d results were memoized",
                request.task_name,
                tools.calls_made,
                len(request.memoized_results),
            )
        return Completed(result=result)
