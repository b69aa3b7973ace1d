from __future__ import annotations

import math
import re
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable
from urllib.parse import unquote

import structlog
from fastapi.responses import JSONResponse
from starlette.datastructures import Headers, MutableHeaders

from miorah.config import get_settings
from miorah.observability.logging import SECURITY
from miorah.observability.metrics import get_metrics
from miorah.security.clients import client_ip

logger = structlog.get_logger(__name__)

ASGIApp = Callable[..., Any]

CONTENT_SECURITY_POLICY = "; ".join(
    [
        "default-src 'self'",
        "script-src 'self' 'unsafe-inline' 'unsafe-eval' https://cdnjs.cloudflare.com",
        "style-src 'self' 'unsafe-inline' https://fonts.googleapis.com https://cdnjs.cloudflare.com",
        "font-src 'self' https://fonts.gstatic.com https://cdnjs.cloudflare.com",
        "img-src 'self' data: https: blob:",
        "connect-src 'self' https://api.* wss://ws.*",
        "frame-ancestors 'none'",
        "base-uri 'self'",
        "form-action 'self'",
        "upgrade-insecure-requests",
    ]
)

SECURITY_HEADERS = {
    "Content-Security-Policy": CONTENT_SECURITY_POLICY,
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "camera=(), microphone=(), geolocation=()",
}

SUSPICIOUS_PATTERNS = [
    re.compile(r"\.\./"),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"union.*select", re.IGNORECASE),
    re.compile(r"exec\s*\(", re.IGNORECASE),
    re.compile(r"eval\s*\(", re.IGNORECASE),
]

_SIZE_UNITS = {"b": 1, "kb": 1024, "mb": 1024**2, "gb": 1024**3}
_SIZE_RE = re.compile(r"^(\d+(?:\.\d+)?)\s*(b|kb|mb|gb)?$")


def parse_size(size: str | int | float) -> int:
    """``"10mb"`` -> bytes. Unparseable strings give 0."""

    if isinstance(size, (int, float)):
        return int(size)
    match = _SIZE_RE.match(size.strip().lower())
    if not match:
        return 0
    return int(float(match.group(1)) * _SIZE_UNITS[match.group(2) or "b"])


def get_cors_origins() -> list[str]:
    settings = get_settings()
    origins = list(settings.cors_origins)
    if settings.client_url and settings.client_url not in origins:
        origins.append(settings.client_url)
    return origins


def _is_https(scope: dict[str, Any]) -> bool:
    if scope.get("scheme") == "https":
        return True
    return Headers(scope=scope).get("x-forwarded-proto") == "https"


class SecurityHeadersMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        https = _is_https(scope)

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = MutableHeaders(scope=message)
                for name, value in SECURITY_HEADERS.items():
                    headers[name] = value
                if https:
                    headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains; preload"
                if "x-powered-by" in headers:
                    del headers["x-powered-by"]
            await send(message)

        await self.app(scope, receive, send_wrapper)


class RequestSizeLimitMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        settings = get_settings()
        headers = Headers(scope=scope)
        max_size = settings.max_request_size
        limit = parse_size(max_size)
        if headers.get("content-type", "").startswith("multipart/form-data"):
            # Image uploads are bounded per file by the upload validation.
            limit = max(limit, settings.max_images_per_product * settings.max_image_size_mb * 1024 * 1024 + 1024 * 1024)
        content_length = headers.get("content-length")
        if content_length and content_length.isdigit() and int(content_length) > limit:
            logger.warning("request_too_large", category=SECURITY, content_length=int(content_length))
            response = JSONResponse(
                status_code=413,
                content={
                    "error": "REQUEST_TOO_LARGE",
                    "message": "Request size exceeds maximum allowed size",
                    "maxSize": max_size,
                },
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


class IPFilterMiddleware:
    """Blacklist wins over whitelist; an empty whitelist admits everyone."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        settings = get_settings()
        ip = client_ip(scope)
        error = None
        if settings.ip_blacklist and ip in settings.ip_blacklist:
            error = "IP_BLOCKED"
        elif settings.ip_whitelist and ip not in settings.ip_whitelist:
            error = "IP_NOT_WHITELISTED"

        if error:
            logger.warning("ip_rejected", category=SECURITY, ip=ip, reason=error)
            get_metrics().observe_ip_blocked(error)
            response = JSONResponse(
                status_code=403, content={"error": error, "message": "Access denied from this IP address"}
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)


def is_suspicious(path: str, query_string: str) -> bool:
    target = unquote(f"{path}?{query_string}")
    return any(pattern.search(target) for pattern in SUSPICIOUS_PATTERNS)


class SecurityLoggerMiddleware:
    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        path = str(scope.get("path", ""))
        query_string = scope.get("query_string", b"").decode("latin-1")
        user_agent = Headers(scope=scope).get("user-agent")
        if is_suspicious(path, query_string):
            logger.warning(
                "suspicious_request", category=SECURITY, ip=client_ip(scope), query=query_string, user_agent=user_agent
            )

        start = time.perf_counter()

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start" and int(message.get("status", 500)) >= 400:
                logger.warning(
                    "request_failed",
                    category=SECURITY,
                    status_code=int(message["status"]),
                    ip=client_ip(scope),
                    user_agent=user_agent,
                    elapsed_ms=round((time.perf_counter() - start) * 1000.0, 2),
                )
            await send(message)

        await self.app(scope, receive, send_wrapper)


@dataclass
class _Attempts:
    count: int
    first_attempt: float


class BruteForceGuard:
    """Blocks an IP for ``block_seconds`` after ``max_attempts`` 401/403 responses."""

    def __init__(
        self,
        max_attempts: int = 5,
        window_seconds: float = 15 * 60,
        block_seconds: float = 60 * 60,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.block_seconds = block_seconds
        self.clock = clock
        self._lock = Lock()
        self._attempts: dict[str, _Attempts] = {}
        self._blocked: dict[str, float] = {}

    def retry_after(self, ip: str) -> int | None:
        """Seconds left on the block for ``ip``, or ``None`` when not blocked."""

        now = self.clock()
        with self._lock:
            blocked_at = self._blocked.get(ip)
            if blocked_at is None:
                return None
            left = self.block_seconds - (now - blocked_at)
            if left <= 0:
                del self._blocked[ip]
                return None
            return math.ceil(left)

    def record(self, ip: str, status_code: int) -> None:
        now = self.clock()
        with self._lock:
            if status_code in (401, 403):
                attempts = self._attempts.get(ip)
                if attempts is None or now - attempts.first_attempt > self.window_seconds:
                    attempts = _Attempts(count=0, first_attempt=now)
                attempts.count += 1
                self._attempts[ip] = attempts
                if attempts.count >= self.max_attempts:
                    self._blocked[ip] = now
                    del self._attempts[ip]
                    logger.warning(
                        "ip_blocked", category=SECURITY, ip=ip, block_seconds=self.block_seconds, attempts=attempts.count
                    )
            elif 200 <= status_code < 300:
                self._attempts.pop(ip, None)

    def sweep(self, now: float | None = None) -> None:
        now = self.clock() if now is None else now
        with self._lock:
            for ip in [ip for ip, a in self._attempts.items() if now - a.first_attempt > self.window_seconds]:
                del self._attempts[ip]
            for ip in [ip for ip, at in self._blocked.items() if now - at > self.block_seconds]:
                del self._blocked[ip]

    def reset(self) -> None:
        with self._lock:
            self._attempts.clear()
            self._blocked.clear()


_GUARD = BruteForceGuard()


def get_brute_force_guard() -> BruteForceGuard:
    return _GUARD


class BruteForceMiddleware:
    def __init__(self, app: ASGIApp, guard: BruteForceGuard | None = None) -> None:
        self.app = app
        self._guard = guard

    @property
    def guard(self) -> BruteForceGuard:
        return self._guard or get_brute_force_guard()

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http" or not get_settings().brute_force_enabled:
            await self.app(scope, receive, send)
            return

        ip = client_ip(scope)
        retry_after = self.guard.retry_after(ip)
        if retry_after is not None:
            get_metrics().observe_ip_blocked("BRUTE_FORCE")
            response = JSONResponse(
                status_code=429,
                content={
                    "error": "IP_BLOCKED",
                    "message": "Too many failed attempts. IP temporarily blocked.",
                    "retryAfter": retry_after,
                },
                headers={"Retry-After": str(retry_after)},
            )
            await response(scope, receive, send)
            return

        async def send_wrapper(message: dict[str, Any]) -> None:
            # CSRF rejections are throttled by the CSRF store instead
            if message.get("type") == "http.response.start" and not scope.get("state", {}).get("csrf_rejected"):
                self.guard.record(ip, int(message.get("status", 500)))
            await send(message)

        await self.app(scope, receive, send_wrapper)
