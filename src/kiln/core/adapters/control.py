"""HTTP client for the worker control plane (``/health``, ``/run``, ``/exec`` ...)."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import httpx

from kiln.core import limits
from kiln.core.errors import WorkerUnreachableError
from kiln.core.instrumentation import increment_counter, timed_operation

if TYPE_CHECKING:
    from collections.abc import Mapping

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControlResponse:
    """A well-formed JSON reply. Non-2xx statuses are still well-formed."""

    status_code: int
    body: dict[str, Any]

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


class ControlClient:
    """Shared ``httpx.AsyncClient`` for talking to worker containers.

    Transport failures (refused connection, timeout, non-JSON body) raise
    ``WorkerUnreachableError``; callers treat that as "worker dead".
    """

    def __init__(self, *, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                limits=httpx.Limits(max_connections=100, max_keepalive_connections=20),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def get(
        self,
        host: str,
        port: int,
        path: str,
        *,
        timeout: float = limits.HEALTH_REQUEST_TIMEOUT_SECONDS,
    ) -> ControlResponse:
        return await self._request("GET", host, port, path, timeout=timeout)

    async def post(
        self,
        host: str,
        port: int,
        path: str,
        body: Mapping[str, Any] | None = None,
        *,
        timeout: float = limits.CONTROL_REQUEST_TIMEOUT_SECONDS,
    ) -> ControlResponse:
        return await self._request("POST", host, port, path, body=body or {}, timeout=timeout)

    async def health(
        self,
        host: str,
        port: int,
        *,
        timeout: float = limits.HEALTH_REQUEST_TIMEOUT_SECONDS,
    ) -> dict[str, Any] | None:
        """Return the ``/health`` body, or ``None`` when unreachable or not 2xx."""
        try:
            response = await self.get(host, port, "/health", timeout=timeout)
        except WorkerUnreachableError as exc:
            logger.debug("Health probe failed: %s", exc)
            return None
        return response.body if response.ok else None

    async def _request(
        self,
        method: str,
        host: str,
        port: int,
        path: str,
        *,
        body: Mapping[str, Any] | None = None,
        timeout: float,
    ) -> ControlResponse:
        url = f"http://{host}:{port}{path}"
        fields = {"method": method, "path": path}
        increment_counter("control.requests", fields=fields)
        with timed_operation("control.request.duration_ms", fields=fields):
            try:
                response = await self._get_client().request(
                    method,
                    url,
                    json=dict(body) if body is not None else None,
                    timeout=timeout,
                )
            except httpx.TimeoutException as exc:
                increment_counter("control.timeouts", fields=fields)
                raise WorkerUnreachableError(
                    "Request timed out", host=host, port=port, path=path
                ) from exc
            except httpx.TransportError as exc:
                increment_counter("control.transport_errors", fields=fields)
                raise WorkerUnreachableError(
                    f"Connection failed: {exc}", host=host, port=port, path=path
                ) from exc

        try:
            payload = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as exc:
            raise WorkerUnreachableError(
                f"Invalid JSON response (HTTP {response.status_code})",
                host=host,
                port=port,
                path=path,
            ) from exc
        if not isinstance(payload, dict):
            raise WorkerUnreachableError(
                "Response body is not a JSON object", host=host, port=port, path=path
            )
        return ControlResponse(status_code=response.status_code, body=payload)


__all__ = ["ControlClient", "ControlResponse"]
