from __future__ import annotations

import uuid
from collections.abc import Callable
from time import perf_counter
from typing import Any

import structlog
from starlette.datastructures import Headers, MutableHeaders

from miorah.observability.metrics import get_metrics
from miorah.security.clients import client_ip

_MAX_REQUEST_ID_LENGTH = 128


class RequestContextMiddleware:
    """Binds request context for structlog, writes the access log and counts requests.

    An incoming ``x-request-id`` is reused so ids can be followed across the
    client, a reverse proxy and this service; otherwise a fresh uuid4 is issued.
    """

    def __init__(self, app: Callable[..., Any]) -> None:
        self.app = app
        self._excluded_metric_paths = {"/api/metrics", "/health"}
        self._excluded_metric_prefixes = ("/uploads/",)

    def _counts(self, path: str) -> bool:
        return path not in self._excluded_metric_paths and not path.startswith(self._excluded_metric_prefixes)

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        incoming = headers.get("x-request-id")
        request_id = incoming if incoming and len(incoming) <= _MAX_REQUEST_ID_LENGTH else str(uuid.uuid4())
        path = scope.get("path", "")

        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            path=path,
            method=scope.get("method"),
            client_ip=client_ip(scope),
        )

        start = perf_counter()
        status_code: int = 500
        response_bytes = 0

        async def send_wrapper(message: dict[str, Any]) -> None:
            nonlocal status_code, response_bytes

            if message.get("type") == "http.response.start":
                status_code = int(message.get("status", 500))
                MutableHeaders(scope=message)["X-Request-ID"] = request_id
            elif message.get("type") == "http.response.body":
                response_bytes += len(message.get("body", b""))

            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            elapsed_ms = (perf_counter() - start) * 1000.0

            if self._counts(path):
                get_metrics().observe_http_request(elapsed_ms=elapsed_ms, status_code=status_code)

            log = structlog.get_logger("access")
            emit = log.error if status_code >= 500 else log.warning if status_code >= 400 else log.info
            emit(
                "http_request",
                status_code=status_code,
                elapsed_ms=round(elapsed_ms, 2),
                response_bytes=response_bytes,
                user_agent=headers.get("user-agent"),
            )

            structlog.contextvars.clear_contextvars()
