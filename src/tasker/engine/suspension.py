"""Turn an executor suspension into a persisted child frame."""

from __future__ import annotations

import logging

from tasker.engine.errors import AdapterFailure, CoordinationError, TaskNotFoundError
from tasker.engine.executor.base import Suspended
from tasker.engine.models import CallDescriptor, StackRunView, VmState
from tasker.engine.repository import EngineRepository

logger = logging.getLogger(__name__)


class SuspensionProtocol:
    """Create exactly one child frame per suspension and park the parent on it."""

    def __init__(self, repository: EngineRepository) -> None:
        self.repository = repository

    def suspend(self, frame: StackRunView, suspended: Suspended) -> StackRunView:
        """Persist the child for ``suspended`` and return it.

        Raises:
            AdapterFailure: the frame is not a task body, or a nested-task call is malformed.
            TaskNotFoundError: a nested-task call names an unregistered task.
            CoordinationError: the frame left ``processing`` before the suspension was written.
        """

        if frame.vm_state is None:
            raise AdapterFailure(f"Frame {frame.id} suspended but carries no task state")

        call = CallDescriptor(
            service_name=suspended.service_name,
            method_name=suspended.method_path,
            args=list(suspended.args),
        )
        child_vm_state = self._nested_vm_state(call) if call.is_nested_task else None
        child = self.repository.suspend_frame(
            frame=frame,
            vm_state=frame.vm_state,
            call=call,
            child_vm_state=child_vm_state,
        )
        if child is None:
            raise CoordinationError(
                f"Frame {frame.id} is no longer processing; suspension discarded",
            )
        logger.info(
            "Frame %s suspended on %s.%s (child %s, call #%d)",
            frame.id,
            call.service_name,
            call.method_name,
            child.id,
            frame.vm_state.call_sequence,
        )
        return child

    def _nested_vm_state(self, call: CallDescriptor) -> VmState:
        if not call.args or not isinstance(call.args[0], str) or not call.args[0]:
            raise AdapterFailure("Nested task call needs a task name as its first argument")
        task_name = call.args[0]
        task_input = call.args[1] if len(call.args) > 1 else {}
        task_function = self.repository.get_task_function(task_name)
        if task_function is None:
            raise TaskNotFoundError(task_name)
        return VmState(task_code=task_function.code, task_name=task_name, task_input=task_input)
