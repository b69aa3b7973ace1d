from __future__ import annotations

from collections import Counter
from dataclasses import asdict, dataclass
from threading import Lock
from typing import Any


@dataclass
class _LatencyAgg:
    count: int = 0
    sum_ms: float = 0.0
    max_ms: float = 0.0

    def observe(self, elapsed_ms: float) -> None:
        self.count += 1
        self.sum_ms += float(elapsed_ms)
        if elapsed_ms > self.max_ms:
            self.max_ms = float(elapsed_ms)


class InMemoryMetrics:
    """Thread-safe, process-local request and security counters (resets on restart)."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._reset_unlocked()

    def _reset_unlocked(self) -> None:
        self.http_requests_total = 0
        self.rate_limited_total = 0
        self.csrf_rejected_total = 0
        self.ip_blocked_total = 0
        self.emails_sent_total = 0
        self.emails_failed_total = 0
        self.http_request_ms = _LatencyAgg()
        self.responses_by_class: Counter[str] = Counter()
        self.rate_limited_by_limiter: Counter[str] = Counter()
        self.csrf_rejected_by_code: Counter[str] = Counter()
        self.ip_blocked_by_reason: Counter[str] = Counter()

    def observe_http_request(self, elapsed_ms: float, status_code: int | None = None) -> None:
        with self._lock:
            self.http_requests_total += 1
            self.http_request_ms.observe(elapsed_ms)
            if status_code is not None:
                self.responses_by_class[f"{status_code // 100}xx"] += 1

    def observe_rate_limited(self, limiter: str) -> None:
        with self._lock:
            self.rate_limited_total += 1
            self.rate_limited_by_limiter[limiter] += 1

    def observe_csrf_rejected(self, code: str) -> None:
        with self._lock:
            self.csrf_rejected_total += 1
            self.csrf_rejected_by_code[code] += 1

    def observe_ip_blocked(self, reason: str) -> None:
        with self._lock:
            self.ip_blocked_total += 1
            self.ip_blocked_by_reason[reason] += 1

    def observe_email(self, ok: bool) -> None:
        with self._lock:
            if ok:
                self.emails_sent_total += 1
            else:
                self.emails_failed_total += 1

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            return {
                "counters": {
                    "http_requests_total": self.http_requests_total,
                    "rate_limited_total": self.rate_limited_total,
                    "csrf_rejected_total": self.csrf_rejected_total,
                    "ip_blocked_total": self.ip_blocked_total,
                    "emails_sent_total": self.emails_sent_total,
                    "emails_failed_total": self.emails_failed_total,
                },
                "breakdown": {
                    "responses_by_class": dict(self.responses_by_class),
                    "rate_limited_by_limiter": dict(self.rate_limited_by_limiter),
                    "csrf_rejected_by_code": dict(self.csrf_rejected_by_code),
                    "ip_blocked_by_reason": dict(self.ip_blocked_by_reason),
                },
                "latency_ms": {
                    "http_request_ms": asdict(self.http_request_ms),
                },
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_unlocked()


_METRICS: InMemoryMetrics | None = None


def get_metrics() -> InMemoryMetrics:
    global _METRICS
    if _METRICS is None:
        _METRICS = InMemoryMetrics()
    return _METRICS


def reset_metrics() -> None:
    """Reset metrics counters/aggregates (used by tests)."""

    get_metrics().reset()
