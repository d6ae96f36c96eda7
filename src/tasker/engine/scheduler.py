"""Frame scheduler: pick, lock, claim and execute one continuation frame."""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta

from tasker.engine.errors import (
    AdapterFailure,
    CallFailure,
    CoordinationError,
    TaskNotFoundError,
)
from tasker.engine.executor.base import (
    Completed,
    Errored,
    ExecutorAdapter,
    ExecutorRequest,
    Suspended,
)
from tasker.engine.liveness import DispatchTrigger
from tasker.engine.models import (
    DispatchResult,
    ErrorKind,
    FrameError,
    FrameOutcome,
    StackRunStatus,
    StackRunView,
)
from tasker.engine.propagation import DEFAULT_DEPTH_CAP, CompletionPropagator
from tasker.engine.proxy.registry import ServiceRegistry
from tasker.engine.repository import EngineRepository
from tasker.engine.resumption import ResumptionProtocol
from tasker.engine.suspension import SuspensionProtocol
from tasker.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_SCAN_LIMIT = 20
DEFAULT_RESUME_GRACE_SECONDS = 30.0


class FrameScheduler:
    """Advance frames one at a time, coordinating with other workers through the store.

    A chain is skipped while one of its frames is processing. Otherwise the
    scheduler takes the chain's ``TaskLock``, unless the frame is a child
    its suspended parent is waiting on (or whose parent already completed).
    A lock taken for a frame that then suspends is kept until the chain's root
    frame reaches a terminal state.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: EngineRepository,
        executor: ExecutorAdapter,
        services: ServiceRegistry,
        trigger: DispatchTrigger,
        worker_id: str,
        propagation_depth_cap: int = DEFAULT_DEPTH_CAP,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
        resume_grace_seconds: float = DEFAULT_RESUME_GRACE_SECONDS,
    ) -> None:
        self.repository = repository
        self.executor = executor
        self.services = services
        self.trigger = trigger
        self.worker_id = worker_id
        self.scan_limit = scan_limit
        self.resume_grace_seconds = resume_grace_seconds
        self.suspension = SuspensionProtocol(repository)
        self.resumption = ResumptionProtocol(repository, run_resumed=self.run_resumed)
        self.propagator = CompletionPropagator(
            repository=repository,
            resumption=self.resumption,
            trigger=trigger,
            depth_cap=propagation_depth_cap,
        )

    def dispatch_next(self) -> DispatchResult:
        """Process the oldest dispatchable frame, skipping chains owned by other workers.

        Frames stranded in ``pending_resume`` by a crashed worker go first.
        """

        stranded = self.repository.list_stranded_resumes(
            older_than=self.stranded_cutoff(),
            limit=self.scan_limit,
        )
        for frame in stranded:
            logger.warning("Frame %s was left in pending_resume; resuming it", frame.id)
            result = self.process_one(frame.id)
            if result.processed:
                return result

        result = DispatchResult(processed=False, stack_run_id=None, reason="no_pending")
        for frame in self.repository.list_dispatch_candidates(limit=self.scan_limit):
            result = self._dispatch(frame)
            if result.processed:
                return result
        return result

    def stranded_cutoff(self) -> datetime:
        """A ``pending_resume`` frame untouched since this moment counts as stranded."""

        return utc_now() - timedelta(seconds=self.resume_grace_seconds)

    def process_one(self, stack_run_id: str) -> DispatchResult:
        """Run the dispatch pipeline for one explicit frame."""

        frame = self.repository.get_stack_run(stack_run_id)
        if frame is None:
            return DispatchResult(processed=False, stack_run_id=stack_run_id, reason="not_found")

        if frame.status is StackRunStatus.PENDING_RESUME:
            outcome = self.run_resumed(frame.id)
            if outcome is None:
                return DispatchResult(processed=False, stack_run_id=frame.id, reason="stale")
            self._settle(frame, outcome)
            return DispatchResult(
                processed=True,
                stack_run_id=frame.id,
                reason=outcome.status.value,
            )

        if frame.status is not StackRunStatus.PENDING:
            logger.debug("Frame %s is %s; nothing to process", frame.id, frame.status.value)
            return DispatchResult(processed=False, stack_run_id=frame.id, reason="not_pending")
        if self.repository.has_earlier_pending_sibling(frame):
            logger.info("Frame %s waits behind an earlier pending sibling", frame.id)
            return DispatchResult(
                processed=False,
                stack_run_id=frame.id,
                reason="earlier_sibling_pending",
            )
        return self._dispatch(frame)

    def run_resumed(self, stack_run_id: str) -> FrameOutcome | None:
        """Claim a ``pending_resume`` frame and re-run its task body.

        Returns ``None`` when another worker claimed it first.
        """

        claimed = self.repository.claim_frame(
            stack_run_id=stack_run_id,
            expected_status=StackRunStatus.PENDING_RESUME,
            worker_id=self.worker_id,
        )
        if claimed is None:
            logger.info("Frame %s was resumed by another worker", stack_run_id)
            return None
        try:
            return self._execute(claimed)
        except CoordinationError as error:
            logger.info("Resumed frame %s: %s", stack_run_id, error)
            return None

    def _dispatch(self, frame: StackRunView) -> DispatchResult:
        task_run_id = frame.parent_task_run_id
        if self.repository.is_chain_busy(task_run_id):
            logger.info("Chain %s is busy; frame %s skipped", task_run_id, frame.id)
            return DispatchResult(processed=False, stack_run_id=frame.id, reason="chain_busy")

        lock_owner: str | None = None
        if self._can_bypass_lock(frame):
            logger.debug("Frame %s bypasses the lock of chain %s", frame.id, task_run_id)
        else:
            lock_owner = f"{self.worker_id}:{secrets.token_hex(4)}"
            if not self.repository.try_acquire_task_lock(task_run_id=task_run_id, owner=lock_owner):
                logger.info("Chain %s is locked; frame %s skipped", task_run_id, frame.id)
                return DispatchResult(processed=False, stack_run_id=frame.id, reason="locked")

        claimed = self.repository.claim_frame(
            stack_run_id=frame.id,
            expected_status=StackRunStatus.PENDING,
            worker_id=self.worker_id,
        )
        if claimed is None:
            logger.info("Frame %s was claimed by another worker", frame.id)
            self._release(task_run_id, lock_owner)
            return DispatchResult(processed=False, stack_run_id=frame.id, reason="stale")

        logger.info(
            "Processing frame %s (%s.%s) of chain %s",
            claimed.id,
            claimed.service_name,
            claimed.method_name,
            task_run_id,
        )
        try:
            outcome = self._execute(claimed)
        except CoordinationError as error:
            logger.info("Frame %s: %s", claimed.id, error)
            self._release(task_run_id, lock_owner)
            return DispatchResult(processed=False, stack_run_id=claimed.id, reason="stale")

        self._settle(claimed, outcome)
        if outcome.status is not StackRunStatus.SUSPENDED_WAITING_CHILD:
            self._release(task_run_id, lock_owner)
        return DispatchResult(processed=True, stack_run_id=claimed.id, reason=outcome.status.value)

    def _can_bypass_lock(self, frame: StackRunView) -> bool:
        if frame.parent_stack_run_id is None:
            return False
        parent = self.repository.get_stack_run(frame.parent_stack_run_id)
        if parent is None:
            return False
        if (
            parent.status is StackRunStatus.SUSPENDED_WAITING_CHILD
            and parent.waiting_on_stack_run_id == frame.id
        ):
            return True
        return parent.status is StackRunStatus.COMPLETED

    def _settle(self, frame: StackRunView, outcome: FrameOutcome) -> None:
        if outcome.is_terminal:
            self.propagator.on_terminal(frame, outcome)
        else:
            self.trigger.notify(outcome.child_stack_run_id)

    def _release(self, task_run_id: str, lock_owner: str | None) -> None:
        if lock_owner is None:
            return
        self.repository.release_task_lock(task_run_id=task_run_id, owner=lock_owner)

    def _execute(self, frame: StackRunView) -> FrameOutcome:
        if frame.is_task_body:
            return self._run_task_body(frame)
        return self._run_call(frame)

    def _run_call(self, frame: StackRunView) -> FrameOutcome:
        try:
            result = self.services.call(frame.service_name, frame.method_name, frame.args)
        except CallFailure as error:
            logger.warning(
                "Call %s.%s of frame %s failed: %s",
                frame.service_name,
                frame.method_name,
                frame.id,
                error,
            )
            return FrameOutcome.failed(
                FrameError(
                    message=str(error),
                    kind=ErrorKind.CALL_FAILURE,
                    caused_by=frame.call_reference(),
                ),
            )
        return FrameOutcome.completed(result)

    def _run_task_body(self, frame: StackRunView) -> FrameOutcome:
        vm_state = frame.vm_state
        if vm_state is None:
            return _adapter_failure(f"Task-body frame {frame.id} has no vm_state")
        request = ExecutorRequest(
            task_code=vm_state.task_code,
            task_name=vm_state.task_name,
            task_input=vm_state.task_input,
            memoized_results=list(vm_state.memoized_results),
            stack_run_id=frame.id,
            task_run_id=frame.parent_task_run_id,
        )
        try:
            outcome = self.executor.run(request)
        except Exception as error:  # noqa: BLE001
            logger.warning("Executor raised for frame %s: %s", frame.id, error)
            return _adapter_failure(f"{type(error).__name__}: {error}")

        if isinstance(outcome, Completed):
            return FrameOutcome.completed(outcome.result)
        if isinstance(outcome, Errored):
            logger.warning("Task body of frame %s errored: %s", frame.id, outcome.error)
            return _adapter_failure(outcome.error)
        if isinstance(outcome, Suspended):
            try:
                child = self.suspension.suspend(frame, outcome)
            except (AdapterFailure, TaskNotFoundError) as error:
                logger.warning("Frame %s could not suspend: %s", frame.id, error)
                return _adapter_failure(str(error))
            return FrameOutcome.suspended(child.id)
        return _adapter_failure(f"Unsupported executor outcome: {outcome!r}")


def _adapter_failure(message: str) -> FrameOutcome:
    return FrameOutcome.failed(FrameError(message=message, kind=ErrorKind.ADAPTER_FAILURE))
