"""Engine error taxonomy."""

from __future__ import annotations


class EngineError(RuntimeError):
    """Base class for continuation engine errors."""


class CallFailure(EngineError):
    """A service proxy call raised or returned an error payload."""

    def __init__(self, message: str, *, service_name: str, method_name: str) -> None:
        super().__init__(message)
        self.service_name = service_name
        self.method_name = method_name


class UnknownServiceError(CallFailure):
    """Service name outside the closed set of registered proxies."""

    def __init__(self, service_name: str, *, method_name: str = "") -> None:
        super().__init__(
            f"Unknown service: {service_name}",
            service_name=service_name,
            method_name=method_name,
        )


class AdapterFailure(EngineError):
    """The executor adapter errored or could not be invoked."""


class ReplayMismatchError(AdapterFailure):
    """A replayed call differs from the memoized call at the same position."""

    def __init__(
        self,
        *,
        sequence: int,
        expected: tuple[str, str],
        actual: tuple[str, str],
    ) -> None:
        super().__init__(
            "Non-deterministic task body: call #%d was %s.%s on first run, now %s.%s"
            % (sequence, expected[0], expected[1], actual[0], actual[1]),
        )
        self.sequence = sequence
        self.expected = expected
        self.actual = actual


class CoordinationError(EngineError):
    """Lost an optimistic update race; the work is picked up on a later dispatch."""


class ProtocolViolation(EngineError):
    """Malformed frame graph detected while propagating (cycle or excessive depth)."""

    def __init__(self, message: str, *, reason: str, stack_run_id: str) -> None:
        super().__init__(message)
        self.reason = reason
        self.stack_run_id = stack_run_id


class TaskNotFoundError(EngineError):
    """No registered task function with the requested name."""

    def __init__(self, task_name: str) -> None:
        super().__init__(f"Task not found: {task_name}")
        self.task_name = task_name
