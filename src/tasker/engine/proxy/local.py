"""In-process service proxy for tests and local runs."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

from tasker.engine.errors import CallFailure

Handler = Callable[..., Any]


class LocalServiceProxy:
    """Dispatch calls to Python handlers keyed by dotted method path."""

    def __init__(self, handlers: dict[str, Handler] | None = None) -> None:
        self._handlers: dict[str, Handler] = dict(handlers or {})
        self.calls: list[tuple[str, str, list[Any]]] = []

    def register(self, method_path: str, handler: Handler) -> None:
        self._handlers[method_path] = handler

    def call(self, service_name: str, method_path: str, args: list[Any]) -> Any:
        self.calls.append((service_name, method_path, list(args)))
        handler = self._handlers.get(method_path)
        if handler is None:
            raise CallFailure(
                f"Method {method_path} not found on {service_name} service",
                service_name=service_name,
                method_name=method_path,
            )
        return handler(*args)
