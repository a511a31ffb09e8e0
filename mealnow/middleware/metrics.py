"""Prometheus text metrics: HTTP traffic plus webhook and quota counters."""
from __future__ import annotations

import time
from collections import defaultdict
from threading import Lock

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse, Response

_PREFIX = "mealnow"


def _labels(**labels) -> str:
    return "{" + ",".join(f'{k}="{v}"' for k, v in labels.items()) + "}"


def _header(lines: list[str], name: str, help_text: str, kind: str) -> str:
    metric = f"{_PREFIX}_{name}"
    if lines:
        lines.append("")
    lines.append(f"# HELP {metric} {help_text}")
    lines.append(f"# TYPE {metric} {kind}")
    return metric


class _Metrics:
    """In-memory counters, guarded by one lock."""

    def __init__(self):
        self._lock = Lock()
        self.startup_time = time.time()
        self.request_count: dict[tuple[str, str, int], int] = defaultdict(int)
        self.request_duration_sum: dict[tuple[str, str], float] = defaultdict(float)
        self.request_duration_count: dict[tuple[str, str], int] = defaultdict(int)
        # (source, outcome), e.g. ("app_store", "stale")
        self.webhook_events: dict[tuple[str, str], int] = defaultdict(int)
        # trial | premium | combo | exceeded | denied
        self.quota_decisions: dict[str, int] = defaultdict(int)
        self.active_requests = 0

    def record(self, method: str, path: str, status: int, duration: float):
        with self._lock:
            self.request_count[(method, path, status)] += 1
            self.request_duration_sum[(method, path)] += duration
            self.request_duration_count[(method, path)] += 1

    def record_webhook(self, source: str, outcome: str):
        with self._lock:
            self.webhook_events[(source, outcome)] += 1

    def record_quota(self, decision: str):
        with self._lock:
            self.quota_decisions[decision] += 1

    def inc_active(self):
        with self._lock:
            self.active_requests += 1

    def dec_active(self):
        with self._lock:
            self.active_requests -= 1

    def reset(self):
        with self._lock:
            for counter in (
                self.request_count, self.request_duration_sum, self.request_duration_count,
                self.webhook_events, self.quota_decisions,
            ):
                counter.clear()
            self.active_requests = 0

    def render(self) -> str:
        lines: list[str] = []
        with self._lock:
            name = _header(lines, "http_requests_total", "Total HTTP requests", "counter")
            for (method, path, status), count in sorted(self.request_count.items()):
                lines.append(f"{name}{_labels(method=method, path=path, status=status)} {count}")

            name = _header(lines, "http_request_duration_seconds", "HTTP request duration", "summary")
            for (method, path), total in sorted(self.request_duration_sum.items()):
                labels = _labels(method=method, path=path)
                lines.append(f"{name}_sum{labels} {total:.6f}")
                lines.append(f"{name}_count{labels} {self.request_duration_count[(method, path)]}")

            name = _header(
                lines, "webhook_events_total", "Billing webhook deliveries by outcome", "counter"
            )
            for (source, outcome), count in sorted(self.webhook_events.items()):
                lines.append(f"{name}{_labels(source=source, outcome=outcome)} {count}")

            name = _header(lines, "quota_decisions_total", "Quota gate decisions", "counter")
            for decision, count in sorted(self.quota_decisions.items()):
                lines.append(f"{name}{_labels(decision=decision)} {count}")

            name = _header(lines, "active_requests", "Current in-flight requests", "gauge")
            lines.append(f"{name} {self.active_requests}")

            name = _header(lines, "uptime_seconds", "Seconds since process start", "gauge")
            lines.append(f"{name} {time.time() - self.startup_time:.1f}")

        return "\n".join(lines) + "\n"


metrics = _Metrics()


def _normalize_path(path: str) -> str:
    """/api/v1/billing/usage/123 -> /api/v1/billing/usage/:id"""
    segments = [
        ":id" if seg.isdigit() or (len(seg) > 20 and seg.replace("-", "").isalnum()) else seg
        for seg in path.rstrip("/").split("/")
    ]
    return "/".join(segments) or "/"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Serves ``/metrics`` and times every other request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.url.path == "/metrics":
            return PlainTextResponse(metrics.render(), media_type="text/plain; version=0.0.4")

        path = _normalize_path(request.url.path)
        started = time.perf_counter()
        metrics.inc_active()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            metrics.record(request.method, path, status, time.perf_counter() - started)
            metrics.dec_active()
