"""CSRF protection.

Two modes, picked by ``CSRF_MODE``:

* ``synchronizer`` (default): the server keeps one token per session (user id
  when authenticated, otherwise client IP) as ``salt`` + ``HMAC-SHA256(salt,
  token)``; clients echo the token in ``x-csrf-token`` (or ``?_csrf=``).
* ``double_submit``: the ``csrf-token`` cookie must equal the header.

Sessions that collect too many rejections within 15 minutes get 429 until the
oldest failure ages out.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import time
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable

import structlog
from fastapi.responses import JSONResponse
from starlette.requests import Request

from miorah.config import get_settings
from miorah.observability.logging import CSRF
from miorah.observability.metrics import get_metrics
from miorah.security.clients import client_ip, session_user_id

logger = structlog.get_logger(__name__)

TOKEN_BYTES = 32
SALT_BYTES = 16
TOKEN_EXPIRY_SECONDS = 60 * 60
FAILURE_WINDOW_SECONDS = 15 * 60
COOKIE_NAME = "csrf-token"
HEADER_NAME = "x-csrf-token"
QUERY_PARAM = "_csrf"
EXEMPT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


@dataclass(frozen=True)
class CSRFToken:
    token: str
    salt: str
    hash: str
    issued_at: float

    @property
    def expires_at(self) -> float:
        return self.issued_at + TOKEN_EXPIRY_SECONDS


def _digest(salt: str, token: str) -> str:
    return hmac.new(salt.encode("utf-8"), token.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_csrf_token(now: float | None = None) -> CSRFToken:
    token = secrets.token_hex(TOKEN_BYTES)
    salt = secrets.token_hex(SALT_BYTES)
    return CSRFToken(token=token, salt=salt, hash=_digest(salt, token), issued_at=time.time() if now is None else now)


def validate_csrf_token(token: str, salt: str, expected_hash: str, issued_at: float, now: float | None = None) -> bool:
    now = time.time() if now is None else now
    if now - issued_at > TOKEN_EXPIRY_SECONDS:
        return False
    return hmac.compare_digest(expected_hash, _digest(salt, token))


class CSRFTokenStore:
    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self.clock = clock
        self._lock = Lock()
        self._tokens: dict[str, CSRFToken] = {}
        self._failures: dict[str, list[float]] = {}

    def issue(self, session_id: str) -> CSRFToken:
        issued = generate_csrf_token(self.clock())
        with self._lock:
            self._tokens[session_id] = issued
        return issued

    def get(self, session_id: str) -> CSRFToken | None:
        with self._lock:
            return self._tokens.get(session_id)

    def get_or_issue(self, session_id: str) -> CSRFToken:
        current = self.get(session_id)
        if current is not None and self.clock() - current.issued_at <= TOKEN_EXPIRY_SECONDS:
            return current
        return self.issue(session_id)

    def validate(self, session_id: str, submitted: str) -> bool:
        stored = self.get(session_id)
        if stored is None:
            return False
        return validate_csrf_token(submitted, stored.salt, stored.hash, stored.issued_at, now=self.clock())

    def record_failure(self, session_id: str) -> None:
        with self._lock:
            self._failures.setdefault(session_id, []).append(self.clock())

    def recent_failures(self, session_id: str) -> int:
        now = self.clock()
        with self._lock:
            attempts = [ts for ts in self._failures.get(session_id, []) if now - ts < FAILURE_WINDOW_SECONDS]
            if attempts:
                self._failures[session_id] = attempts
            else:
                self._failures.pop(session_id, None)
            return len(attempts)

    def sweep(self, now: float | None = None) -> int:
        now = self.clock() if now is None else now
        with self._lock:
            expired = [sid for sid, tok in self._tokens.items() if now - tok.issued_at > TOKEN_EXPIRY_SECONDS]
            for sid in expired:
                del self._tokens[sid]
            stale = [sid for sid, ts in self._failures.items() if all(now - t >= FAILURE_WINDOW_SECONDS for t in ts)]
            for sid in stale:
                del self._failures[sid]
        return len(expired)

    def reset(self) -> None:
        with self._lock:
            self._tokens.clear()
            self._failures.clear()


_STORE = CSRFTokenStore()


def get_csrf_store() -> CSRFTokenStore:
    return _STORE


def csrf_session_id(scope: dict[str, Any]) -> str:
    return session_user_id(scope) or client_ip(scope)


def is_exempt(method: str, path: str, exempt_paths: list[str]) -> bool:
    if method.upper() in EXEMPT_METHODS:
        return True
    return any(path.startswith(prefix) for prefix in exempt_paths)


class CSRFError(Exception):
    def __init__(self, code: str, message: str, status_code: int = 403) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.status_code = status_code


def check_request(request: Request, store: CSRFTokenStore, mode: str) -> None:
    """Raise ``CSRFError`` unless the request carries a valid token."""

    if mode == "double_submit":
        cookie_token = request.cookies.get(COOKIE_NAME)
        header_token = request.headers.get(HEADER_NAME)
        if not cookie_token or not header_token:
            raise CSRFError("CSRF_TOKEN_MISSING", "CSRF token is required for this request.")
        if not secrets.compare_digest(cookie_token.encode("utf-8"), header_token.encode("utf-8")):
            raise CSRFError("CSRF_TOKEN_MISMATCH", "CSRF token mismatch. Please refresh the page.")
        return

    session_id = csrf_session_id(request.scope)
    if store.get(session_id) is None:
        raise CSRFError("CSRF_TOKEN_MISSING", "CSRF token not found. Please refresh the page.")
    submitted = request.headers.get(HEADER_NAME) or request.query_params.get(QUERY_PARAM)
    if not submitted:
        raise CSRFError("CSRF_TOKEN_REQUIRED", "CSRF token is required for this request.")
    if not store.validate(session_id, submitted):
        raise CSRFError("CSRF_TOKEN_INVALID", "Invalid or expired CSRF token. Please refresh the page.")


class CSRFMiddleware:
    def __init__(self, app: Callable[..., Any], store: CSRFTokenStore | None = None) -> None:
        self.app = app
        self._store = store

    @property
    def store(self) -> CSRFTokenStore:
        return self._store or get_csrf_store()

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        settings = get_settings()
        method = str(scope.get("method", "GET"))
        path = str(scope.get("path", ""))
        if not settings.csrf_enabled or is_exempt(method, path, settings.csrf_exempt_paths):
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        session_id = csrf_session_id(scope)
        if self.store.recent_failures(session_id) >= settings.csrf_failure_limit:
            logger.warning("csrf_failure_limit", category=CSRF, session_id=session_id)
            response = JSONResponse(
                status_code=429,
                content={
                    "error": "TOO_MANY_CSRF_FAILURES",
                    "message": "Too many CSRF failures. Please wait before trying again.",
                },
            )
            await response(scope, receive, send)
            return

        try:
            check_request(request, self.store, settings.csrf_mode)
        except CSRFError as exc:
            self.store.record_failure(session_id)
            scope.setdefault("state", {})["csrf_rejected"] = True
            get_metrics().observe_csrf_rejected(exc.code)
            logger.warning("csrf_rejected", category=CSRF, code=exc.code, session_id=session_id)
            response = JSONResponse(status_code=exc.status_code, content={"error": exc.code, "message": exc.message})
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
