"""Walk terminal outcomes up the frame chain."""

from __future__ import annotations

import logging
from collections import deque
from typing import TYPE_CHECKING

from tasker.engine.errors import ProtocolViolation
from tasker.engine.models import (
    FrameOutcome,
    PropagationReport,
    StackRunStatus,
    StackRunView,
    TaskRunStatus,
)
from tasker.engine.repository import EngineRepository
from tasker.engine.resumption import ResumptionProtocol

if TYPE_CHECKING:
    from tasker.engine.liveness import DispatchTrigger

logger = logging.getLogger(__name__)

DEFAULT_DEPTH_CAP = 10


class CompletionPropagator:
    """Persist a terminal outcome and carry it to every waiting ancestor.

    The walk is an explicit worklist. A frame seen twice means the waiting
    pointers form a cycle; more than ``depth_cap`` frames means the chain is
    malformed. Both abort the walk and leave the remaining frames as they are.
    """

    def __init__(
        self,
        *,
        repository: EngineRepository,
        resumption: ResumptionProtocol,
        trigger: DispatchTrigger,
        depth_cap: int = DEFAULT_DEPTH_CAP,
    ) -> None:
        self.repository = repository
        self.resumption = resumption
        self.trigger = trigger
        self.depth_cap = depth_cap

    def on_terminal(
        self,
        frame: StackRunView,
        outcome: FrameOutcome,
        *,
        persisted: bool = False,
    ) -> PropagationReport:
        if not outcome.is_terminal:
            raise ValueError(f"Outcome {outcome.status.value} is not terminal")

        report = PropagationReport()
        seen: set[str] = set()
        worklist: deque[tuple[StackRunView, FrameOutcome, bool]] = deque(
            [(frame, outcome, persisted)],
        )
        try:
            while worklist:
                current, current_outcome, already_persisted = worklist.popleft()
                self._check_walk(current=current, seen=seen)
                seen.add(current.id)
                report.visited.append(current.id)

                if not already_persisted and not self._persist(current, current_outcome):
                    logger.info(
                        "Frame %s left processing before its outcome was stored; walk stopped",
                        current.id,
                    )
                    report.reason = "stale"
                    break
                self._finish_root(current, current_outcome)

                waiter = self.repository.find_waiter(current.id)
                if waiter is None:
                    continue
                if waiter.id in seen:
                    raise ProtocolViolation(
                        f"Frame {waiter.id} waits on {current.id} but was already visited",
                        reason="cycle",
                        stack_run_id=waiter.id,
                    )
                if waiter.status is not StackRunStatus.SUSPENDED_WAITING_CHILD:
                    logger.info(
                        "Frame %s points at %s but is %s; nothing to unblock",
                        waiter.id,
                        current.id,
                        waiter.status.value,
                    )
                    continue

                next_item = self._unblock(waiter=waiter, child=current, outcome=current_outcome)
                if next_item is not None:
                    worklist.append(next_item)
        except ProtocolViolation as violation:
            logger.error(
                "Propagation aborted at frame %s (%s): %s",
                violation.stack_run_id,
                violation.reason,
                violation,
            )
            report.aborted = True
            report.reason = violation.reason
            self.repository.record_event(
                task_run_id=frame.parent_task_run_id,
                stack_run_id=violation.stack_run_id,
                event_type="propagation_aborted",
                details={"reason": violation.reason, "visited": list(report.visited)},
            )
        finally:
            self.trigger.notify()
        return report

    def _check_walk(self, *, current: StackRunView, seen: set[str]) -> None:
        if current.id in seen:
            raise ProtocolViolation(
                f"Frame {current.id} reached twice while propagating",
                reason="cycle",
                stack_run_id=current.id,
            )
        if len(seen) >= self.depth_cap:
            raise ProtocolViolation(
                f"Propagation exceeded depth cap {self.depth_cap} at frame {current.id}",
                reason="depth",
                stack_run_id=current.id,
            )

    def _persist(self, frame: StackRunView, outcome: FrameOutcome) -> bool:
        if outcome.status is StackRunStatus.COMPLETED:
            return self.repository.complete_frame(stack_run_id=frame.id, result=outcome.result)
        return self.repository.fail_frame(stack_run_id=frame.id, error=outcome.require_error())

    def _finish_root(self, frame: StackRunView, outcome: FrameOutcome) -> None:
        if not (frame.is_root and frame.is_task_body):
            return
        if outcome.status is StackRunStatus.COMPLETED:
            finished = self.repository.finish_task_run(
                task_run_id=frame.parent_task_run_id,
                status=TaskRunStatus.COMPLETED,
                result=outcome.result,
            )
        else:
            finished = self.repository.finish_task_run(
                task_run_id=frame.parent_task_run_id,
                status=TaskRunStatus.FAILED,
                error=outcome.error,
            )
        if finished:
            logger.info(
                "Task run %s %s",
                frame.parent_task_run_id,
                outcome.status.value,
            )
        self.repository.release_task_lock(task_run_id=frame.parent_task_run_id)

    def _unblock(
        self,
        *,
        waiter: StackRunView,
        child: StackRunView,
        outcome: FrameOutcome,
    ) -> tuple[StackRunView, FrameOutcome, bool] | None:
        if outcome.status is StackRunStatus.COMPLETED:
            resumed = self.resumption.resume(waiter, child, outcome.result)
            if resumed is None:
                return None
            if resumed.is_terminal:
                return waiter, resumed, False
            logger.debug(
                "Frame %s suspended again on %s",
                waiter.id,
                resumed.child_stack_run_id,
            )
            self.trigger.notify(resumed.child_stack_run_id)
            return None

        error = self.resumption.fail(waiter, child, outcome.require_error())
        if error is None:
            return None
        return waiter, FrameOutcome.failed(error), True
