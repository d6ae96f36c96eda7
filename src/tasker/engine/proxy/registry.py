"""Closed registry mapping service names to proxies."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from enum import Enum
from typing import Any, Protocol

from tasker.engine.errors import CallFailure, UnknownServiceError

logger = logging.getLogger(__name__)


class ServiceName(str, Enum):
    """External services reachable from task bodies."""

    DATABASE = "database"
    KEYSTORE = "keystore"
    OPENAI = "openai"
    WEBSEARCH = "websearch"
    GAPI = "gapi"


_ALIASES = {
    "supabase": ServiceName.DATABASE,
    "wrappedsupabase": ServiceName.DATABASE,
    "wrappedkeystore": ServiceName.KEYSTORE,
    "wrappedopenai": ServiceName.OPENAI,
    "wrappedwebsearch": ServiceName.WEBSEARCH,
    "wrappedgapi": ServiceName.GAPI,
}


def parse_service_name(service_name: str | ServiceName) -> ServiceName:
    """Normalize a service name or one of its wrapped-endpoint aliases."""

    if isinstance(service_name, ServiceName):
        return service_name
    normalized = service_name.strip().lower()
    alias = _ALIASES.get(normalized)
    if alias is not None:
        return alias
    try:
        return ServiceName(normalized)
    except ValueError as exc:
        raise UnknownServiceError(service_name) from exc


class ServiceProxy(Protocol):
    """Protocol implemented by service proxies."""

    def call(self, service_name: str, method_path: str, args: list[Any]) -> Any:
        """Perform the call and return its result, raising on failure."""


class ServiceRegistry:
    """Route call frames to the proxy registered for their service."""

    def __init__(self, proxies: Mapping[ServiceName | str, ServiceProxy] | None = None) -> None:
        self._proxies: dict[ServiceName, ServiceProxy] = {}
        for name, proxy in (proxies or {}).items():
            self.register(name, proxy)

    @classmethod
    def with_default(cls, proxy: ServiceProxy) -> ServiceRegistry:
        """Registry that routes every known service to the same proxy."""

        return cls(dict.fromkeys(ServiceName, proxy))

    def register(self, service_name: ServiceName | str, proxy: ServiceProxy) -> None:
        self._proxies[parse_service_name(service_name)] = proxy

    def resolve(self, service_name: ServiceName | str) -> ServiceProxy:
        name = parse_service_name(service_name)
        proxy = self._proxies.get(name)
        if proxy is None:
            raise UnknownServiceError(name.value)
        return proxy

    def call(self, service_name: str, method_path: str, args: list[Any]) -> Any:
        """Perform one external call; every failure surfaces as ``CallFailure``."""

        try:
            name = parse_service_name(service_name)
            proxy = self.resolve(name)
        except UnknownServiceError as exc:
            exc.method_name = method_path
            raise
        logger.debug("Calling %s.%s with %d args", name.value, method_path, len(args))
        try:
            return proxy.call(name.value, method_path, args)
        except CallFailure:
            raise
        except Exception as exc:
            raise CallFailure(
                f"{name.value}.{method_path} failed: {type(exc).__name__}: {exc}",
                service_name=name.value,
                method_name=method_path,
            ) from exc
