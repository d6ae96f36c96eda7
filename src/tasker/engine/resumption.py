"""Resume or fail a suspended parent once its child reaches a terminal state."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from tasker.engine.models import (
    ErrorKind,
    FrameError,
    FrameOutcome,
    StackRunStatus,
    StackRunView,
)
from tasker.engine.repository import EngineRepository

logger = logging.getLogger(__name__)

RunResumed = Callable[[str], FrameOutcome | None]


class ResumptionProtocol:
    """Feed a completed child's result back into its waiting parent."""

    def __init__(self, repository: EngineRepository, *, run_resumed: RunResumed) -> None:
        self.repository = repository
        self._run_resumed = run_resumed

    def resume(self, parent: StackRunView, child: StackRunView, result: Any) -> FrameOutcome | None:
        """Memoize ``result`` on the parent and re-run it.

        Returns the parent's new outcome, or ``None`` when the parent was not
        waiting on this child (already resumed by someone else).
        """

        prepared = self.repository.prepare_resume(
            stack_run_id=parent.id,
            child_stack_run_id=child.id,
            service_name=child.service_name,
            method_name=child.method_name,
            result=result,
        )
        if not prepared:
            logger.info(
                "Parent %s is not waiting on %s any more; resumption skipped",
                parent.id,
                child.id,
            )
            return None
        logger.info("Resuming frame %s with result of %s", parent.id, child.id)
        return self._run_resumed(parent.id)

    def fail(
        self,
        parent: StackRunView,
        child: StackRunView,
        child_error: FrameError,
    ) -> FrameError | None:
        """Fail the parent with an error wrapping the child's.

        Returns the stored error, or ``None`` when the parent was not waiting on this child.
        """

        error = FrameError(
            message=(
                f"Child stack run {child.id} ({child.service_name}.{child.method_name}) "
                f"failed: {child_error.message}"
            ),
            kind=ErrorKind.CHILD_FAILURE,
            caused_by=child_error.caused_by or child.call_reference(),
        )
        failed = self.repository.fail_frame(
            stack_run_id=parent.id,
            error=error,
            expected_status=StackRunStatus.SUSPENDED_WAITING_CHILD,
            waiting_on_stack_run_id=child.id,
        )
        if not failed:
            logger.info(
                "Parent %s is not waiting on %s any more; failure not propagated",
                parent.id,
                child.id,
            )
            return None
        logger.info("Frame %s failed because child %s failed", parent.id, child.id)
        return error
