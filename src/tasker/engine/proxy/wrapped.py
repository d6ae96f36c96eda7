"""HTTP proxy for wrapped service endpoints."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from tasker.engine.errors import CallFailure

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
ERROR_BODY_PREVIEW_CHARS = 500


def build_method_chain(method_path: str, args: list[Any]) -> list[dict[str, Any]]:
    """Encode ``"a.b.c"`` + args as the wrapped-service method chain.

    Intermediate properties are plain lookups; the last one is invoked with ``args``.
    """

    parts = [part for part in method_path.split(".") if part]
    if not parts:
        raise ValueError("Method path must not be empty")
    chain: list[dict[str, Any]] = [{"property": part, "args": []} for part in parts[:-1]]
    chain.append({"property": parts[-1], "args": list(args)})
    return chain


class WrappedServiceProxy:
    """Post method chains to ``{base_url}/functions/v1/wrapped{service}``."""

    def __init__(
        self,
        *,
        base_url: str,
        auth_token: str | None = None,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout_seconds, connect=10.0)
        self._max_retries = max_retries
        self._headers = {"Content-Type": "application/json"}
        if auth_token:
            self._headers["Authorization"] = f"Bearer {auth_token}"
        self._transport = transport
        self._clients: dict[str, httpx.Client] = {}

    def call(self, service_name: str, method_path: str, args: list[Any]) -> Any:
        client = self._client_for(service_name)
        chain = build_method_chain(method_path, args)
        try:
            response = client.post(self.endpoint(service_name), json={"chain": chain})
        except httpx.TimeoutException as exc:
            logger.warning("Timeout calling %s.%s", service_name, method_path)
            raise CallFailure(
                f"Timeout calling {service_name}.{method_path}",
                service_name=service_name,
                method_name=method_path,
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("HTTP error calling %s.%s: %s", service_name, method_path, exc)
            raise CallFailure(
                f"HTTP error calling {service_name}.{method_path}: {exc}",
                service_name=service_name,
                method_name=method_path,
            ) from exc

        payload = _decode_json(response)
        if not response.is_success:
            message = _error_message(payload) or response.text[:ERROR_BODY_PREVIEW_CHARS]
            raise CallFailure(
                f"HTTP {response.status_code} from {service_name}.{method_path}: {message}",
                service_name=service_name,
                method_name=method_path,
            )
        if isinstance(payload, dict):
            message = _error_message(payload)
            if message is not None:
                raise CallFailure(
                    f"{service_name}.{method_path} failed: {message}",
                    service_name=service_name,
                    method_name=method_path,
                )
            if set(payload) == {"data"}:
                return payload["data"]
        return payload

    def close(self) -> None:
        for client in self._clients.values():
            client.close()
        self._clients.clear()

    def __enter__(self) -> WrappedServiceProxy:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def endpoint(self, service_name: str) -> str:
        return f"{self._base_url}/functions/v1/wrapped{service_name}"

    def _client_for(self, service_name: str) -> httpx.Client:
        client = self._clients.get(service_name)
        if client is None:
            transport = self._transport or httpx.HTTPTransport(retries=self._max_retries)
            client = httpx.Client(
                timeout=self._timeout,
                headers=self._headers,
                transport=transport,
            )
            self._clients[service_name] = client
        return client


def _decode_json(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _error_message(payload: Any) -> str | None:
    if not isinstance(payload, dict) or "error" not in payload:
        return None
    error = payload["error"]
    if error is None or error == "" or error == {}:
        return None
    if isinstance(error, dict):
        return str(error.get("message") or error)
    return str(error)
