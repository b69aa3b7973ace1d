"""In-memory request rate limiting.

Four strategies share one store keyed by ``<strategy>:<limiter name>:<client>``:

* fixed window: a counter that resets ``window`` seconds after the first hit,
* sliding window: the log of request timestamps inside the last ``window``,
* token bucket: ``capacity`` tokens refilled at ``refill_rate`` per second,
* adaptive: a fixed window whose limit follows the process load.

Limiters are FastAPI dependencies; a rejected request raises
``RateLimitExceeded`` which the app turns into a 429 JSON response.
"""

from __future__ import annotations

import math
import os
import resource
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable

import structlog
from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.datastructures import MutableHeaders

from miorah.config import get_settings
from miorah.observability.logging import RATE_LIMIT
from miorah.observability.metrics import get_metrics
from miorah.security.clients import client_identifier, client_ip

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]
LoadProbe = Callable[[], tuple[float, float]]

_STARTED_AT = time.time()


@dataclass(frozen=True)
class RateLimitConfig:
    window_seconds: float
    max_requests: int
    message: str = "Too many requests from this IP, please try again later."
    standard_headers: bool = True
    legacy_headers: bool = False


RATE_LIMIT_CONFIGS: dict[str, RateLimitConfig] = {
    "default": RateLimitConfig(15 * 60, 100, "Too many requests from this IP, please try again later."),
    "auth": RateLimitConfig(15 * 60, 5, "Too many login attempts, please try again later."),
    "registration": RateLimitConfig(60 * 60, 3, "Too many registration attempts, please try again later."),
    "orders": RateLimitConfig(5 * 60, 10, "Too many order attempts, please try again later."),
    "api": RateLimitConfig(15 * 60, 1000, "Too many API requests, please try again later."),
    "upload": RateLimitConfig(60 * 60, 20, "Too many upload attempts, please try again later."),
}


@dataclass
class RateLimitDecision:
    allowed: bool
    headers: dict[str, str]
    retry_after: int = 0
    body: dict[str, Any] = field(default_factory=dict)


class RateLimitExceeded(Exception):
    def __init__(self, decision: RateLimitDecision) -> None:
        super().__init__(decision.body.get("message", "Too many requests"))
        self.decision = decision

    def to_response(self) -> JSONResponse:
        return JSONResponse(status_code=429, content=self.decision.body, headers=self.decision.headers)


@dataclass
class _WindowEntry:
    count: int
    reset_at: float
    first_request: float


@dataclass
class _RequestLog:
    timestamps: list[float]
    window_seconds: float

    @property
    def reset_at(self) -> float:
        return self.timestamps[-1] + self.window_seconds if self.timestamps else 0.0


@dataclass
class _Bucket:
    tokens: float
    last_refill: float
    capacity: int
    refill_rate: float

    @property
    def reset_at(self) -> float:
        # Evicting a bucket once it would be full again loses nothing.
        return self.last_refill + (self.capacity - self.tokens) / self.refill_rate


class RateLimitStore:
    """Shared entry map for every limiter in the process."""

    def __init__(self, clock: Clock = time.time) -> None:
        self.clock = clock
        self.lock = Lock()
        self.entries: dict[str, _WindowEntry | _RequestLog | _Bucket] = {}

    def __len__(self) -> int:
        with self.lock:
            return len(self.entries)

    def sweep(self, now: float | None = None) -> int:
        now = self.clock() if now is None else now
        with self.lock:
            expired = [key for key, entry in self.entries.items() if now > entry.reset_at]
            for key in expired:
                del self.entries[key]
        if expired:
            logger.debug("rate_limit_sweep", category=RATE_LIMIT, evicted=len(expired))
        return len(expired)

    def reset(self) -> None:
        with self.lock:
            self.entries.clear()


_STORE = RateLimitStore()


def get_rate_limit_store() -> RateLimitStore:
    return _STORE


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _num(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else str(value)


class RateLimiter:
    """Base FastAPI dependency; subclasses implement ``hit``."""

    def __init__(self, name: str, config: RateLimitConfig, store: RateLimitStore | None = None) -> None:
        self.name = name
        self.config = config
        self._store = store

    @property
    def store(self) -> RateLimitStore:
        return self._store or get_rate_limit_store()

    def hit(self, client_id: str) -> RateLimitDecision:
        raise NotImplementedError

    def check(self, scope: dict[str, Any]) -> RateLimitDecision | None:
        """Apply the limiter to a request scope; ``None`` when limiting does not apply."""

        settings = get_settings()
        if not settings.rate_limit_enabled:
            return None
        if is_whitelisted(client_ip(scope), settings.rate_limit_whitelist):
            return None

        client_id = client_identifier(scope)
        decision = self.hit(client_id)
        if not decision.allowed:
            get_metrics().observe_rate_limited(self.name)
            logger.warning(
                "rate_limit_exceeded",
                category=RATE_LIMIT,
                limiter=self.name,
                client_id=client_id,
                retry_after=decision.retry_after,
            )
        return decision

    async def __call__(self, request: Request, response: Response) -> None:
        decision = self.check(request.scope)
        if decision is None:
            return
        if not decision.allowed:
            raise RateLimitExceeded(decision)
        response.headers.update(decision.headers)


class FixedWindowRateLimiter(RateLimiter):
    def hit(self, client_id: str, max_requests: int | None = None) -> RateLimitDecision:
        config = self.config
        limit = config.max_requests if max_requests is None else max_requests
        key = f"{self.name}:{client_id}"

        with self.store.lock:
            now = self.store.clock()
            entry = self.store.entries.get(key)
            if not isinstance(entry, _WindowEntry) or now > entry.reset_at:
                entry = _WindowEntry(count=0, reset_at=now + config.window_seconds, first_request=now)
            # Rejected requests count too, so hammering keeps the window full.
            entry.count += 1
            self.store.entries[key] = entry
            count, reset_at = entry.count, entry.reset_at

        headers: dict[str, str] = {}
        remaining = max(0, limit - count)
        if config.standard_headers:
            headers.update(
                {
                    "RateLimit-Limit": str(limit),
                    "RateLimit-Remaining": str(remaining),
                    "RateLimit-Reset": _iso(reset_at),
                    "RateLimit-Policy": f"{limit};w={_num(config.window_seconds)}",
                }
            )
        if config.legacy_headers:
            headers.update(
                {
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": str(remaining),
                    "X-RateLimit-Reset": str(math.ceil(reset_at)),
                }
            )

        if count <= limit:
            return RateLimitDecision(allowed=True, headers=headers)

        retry_after = math.ceil(reset_at - now)
        headers["Retry-After"] = str(retry_after)
        return RateLimitDecision(
            allowed=False,
            headers=headers,
            retry_after=retry_after,
            body={
                "error": "RATE_LIMIT_EXCEEDED",
                "message": config.message,
                "retryAfter": retry_after,
                "limit": limit,
                "windowMs": int(config.window_seconds * 1000),
            },
        )


class SlidingWindowRateLimiter(RateLimiter):
    def hit(self, client_id: str) -> RateLimitDecision:
        config = self.config
        key = f"sliding:{self.name}:{client_id}"

        with self.store.lock:
            now = self.store.clock()
            entry = self.store.entries.get(key)
            previous = entry.timestamps if isinstance(entry, _RequestLog) else []
            timestamps = [ts for ts in previous if now - ts < config.window_seconds]
            timestamps.append(now)
            self.store.entries[key] = _RequestLog(timestamps=timestamps, window_seconds=config.window_seconds)
            count, oldest = len(timestamps), timestamps[0]

        headers: dict[str, str] = {}
        if config.standard_headers:
            headers.update(
                {
                    "RateLimit-Limit": str(config.max_requests),
                    "RateLimit-Remaining": str(max(0, config.max_requests - count)),
                    "RateLimit-Reset": _iso(now + config.window_seconds),
                    "RateLimit-Policy": f"{config.max_requests};w={_num(config.window_seconds)};sliding",
                }
            )

        if count <= config.max_requests:
            return RateLimitDecision(allowed=True, headers=headers)

        retry_after = math.ceil(oldest + config.window_seconds - now)
        headers["Retry-After"] = str(retry_after)
        return RateLimitDecision(
            allowed=False,
            headers=headers,
            retry_after=retry_after,
            body={
                "error": "RATE_LIMIT_EXCEEDED",
                "message": config.message,
                "retryAfter": retry_after,
                "limit": config.max_requests,
                "windowMs": int(config.window_seconds * 1000),
                "type": "sliding-window",
            },
        )


class TokenBucketRateLimiter(RateLimiter):
    def __init__(
        self,
        name: str,
        config: RateLimitConfig | None = None,
        capacity: int = 10,
        refill_rate: float = 1.0,
        store: RateLimitStore | None = None,
    ) -> None:
        super().__init__(name, config or RATE_LIMIT_CONFIGS["default"], store)
        self.capacity = capacity
        self.refill_rate = refill_rate

    def hit(self, client_id: str) -> RateLimitDecision:
        key = f"bucket:{self.name}:{client_id}"

        with self.store.lock:
            now = self.store.clock()
            bucket = self.store.entries.get(key)
            if not isinstance(bucket, _Bucket):
                bucket = _Bucket(
                    tokens=float(self.capacity), last_refill=now, capacity=self.capacity, refill_rate=self.refill_rate
                )
            elapsed = max(0.0, now - bucket.last_refill)
            bucket.tokens = min(float(self.capacity), bucket.tokens + elapsed * self.refill_rate)
            bucket.last_refill = now
            tokens = bucket.tokens
            allowed = tokens >= 1
            if allowed:
                bucket.tokens -= 1
            self.store.entries[key] = bucket

        headers = {
            "RateLimit-Limit": str(self.capacity),
            "RateLimit-Remaining": str(math.floor(tokens)),
            "RateLimit-Reset": _iso(now + (self.capacity - tokens) / self.refill_rate),
            "RateLimit-Policy": f"{self.capacity};refill={_num(self.refill_rate)}",
        }
        if allowed:
            return RateLimitDecision(allowed=True, headers=headers)

        retry_after = math.ceil((1 - tokens) / self.refill_rate)
        headers["Retry-After"] = str(retry_after)
        return RateLimitDecision(
            allowed=False,
            headers=headers,
            retry_after=retry_after,
            body={
                "error": "RATE_LIMIT_EXCEEDED",
                "message": self.config.message,
                "retryAfter": retry_after,
                "capacity": self.capacity,
                "refillRate": self.refill_rate,
                "type": "token-bucket",
            },
        )


def process_load() -> tuple[float, float]:
    """(memory ratio, cpu ratio) of this process, both in ``[0, 1]``."""

    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is bytes on macOS and kilobytes elsewhere.
    rss_mb = usage.ru_maxrss / (1024 * 1024) if sys.platform == "darwin" else usage.ru_maxrss / 1024
    budget_mb = max(1, get_settings().adaptive_memory_budget_mb)
    memory_ratio = min(1.0, rss_mb / budget_mb)

    times = os.times()
    cpu_total = times.user + times.system
    cpu_ratio = times.user / cpu_total if cpu_total > 0 else 0.0
    return memory_ratio, cpu_ratio


class AdaptiveRateLimiter(FixedWindowRateLimiter):
    def __init__(
        self,
        name: str,
        config: RateLimitConfig | None = None,
        base_max: int = 100,
        min_max: int = 10,
        max_max: int = 1000,
        load_threshold: float = 0.8,
        load_probe: LoadProbe | None = None,
        store: RateLimitStore | None = None,
    ) -> None:
        super().__init__(name, config or RATE_LIMIT_CONFIGS["default"], store)
        self.base_max = base_max
        self.min_max = min_max
        self.max_max = max_max
        self.load_threshold = load_threshold
        self.load_probe = load_probe or process_load

    def current_load(self) -> float:
        memory_ratio, cpu_ratio = self.load_probe()
        return memory_ratio * 0.7 + cpu_ratio * 0.3

    def adjusted_max(self) -> int:
        load = self.current_load()
        if load > self.load_threshold:
            return max(self.min_max, math.floor(self.base_max * (1 - load)))
        if load < self.load_threshold * 0.5:
            return min(self.max_max, math.floor(self.base_max * (1 + (self.load_threshold - load))))
        return self.base_max

    def hit(self, client_id: str, max_requests: int | None = None) -> RateLimitDecision:
        return super().hit(client_id, max_requests=self.adjusted_max() if max_requests is None else max_requests)


def is_whitelisted(ip: str, whitelist: list[str] | set[str]) -> bool:
    return ip in set(whitelist)


auth_rate_limiter = FixedWindowRateLimiter("auth", RATE_LIMIT_CONFIGS["auth"])
registration_rate_limiter = FixedWindowRateLimiter("registration", RATE_LIMIT_CONFIGS["registration"])
order_rate_limiter = FixedWindowRateLimiter("orders", RATE_LIMIT_CONFIGS["orders"])
api_rate_limiter = FixedWindowRateLimiter("api", RATE_LIMIT_CONFIGS["api"])
upload_rate_limiter = FixedWindowRateLimiter("upload", RATE_LIMIT_CONFIGS["upload"])
general_rate_limiter = FixedWindowRateLimiter("general", RATE_LIMIT_CONFIGS["default"])


class RateLimitMiddleware:
    """Applies ``api_rate_limiter`` to every ``/api`` request."""

    def __init__(self, app: Callable[..., Any], limiter: RateLimiter | None = None, prefix: str = "/api") -> None:
        self.app = app
        self.limiter = limiter or api_rate_limiter
        self.prefix = prefix

    async def __call__(self, scope: dict[str, Any], receive: Callable[..., Any], send: Callable[..., Any]) -> None:
        if scope.get("type") != "http" or not str(scope.get("path", "")).startswith(self.prefix):
            await self.app(scope, receive, send)
            return

        decision = self.limiter.check(scope)
        if decision is None:
            await self.app(scope, receive, send)
            return
        if not decision.allowed:
            await RateLimitExceeded(decision).to_response()(scope, receive, send)
            return

        async def send_wrapper(message: dict[str, Any]) -> None:
            if message.get("type") == "http.response.start":
                headers = MutableHeaders(scope=message)
                # Route-level limiters are stricter; keep their headers.
                for name, value in decision.headers.items():
                    headers.setdefault(name, value)
            await send(message)

        await self.app(scope, receive, send_wrapper)


def get_rate_limit_stats() -> dict[str, Any]:
    usage = resource.getrusage(resource.RUSAGE_SELF)
    return {
        "totalKeys": len(get_rate_limit_store()),
        "configs": list(RATE_LIMIT_CONFIGS),
        "memoryUsage": {"maxRss": usage.ru_maxrss},
        "uptime": round(time.time() - _STARTED_AT, 3),
    }
