"""Prometheus metrics.

Labels are kept low-cardinality: outcomes, reason codes and route
templates, never session ids, tool parameters or caller identities.
Set AUTHZ_METRICS_ENABLED=0 to leave `/metrics` unmounted.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Callable, Optional

from fastapi import Request
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest

logger = logging.getLogger("agent_authz.metrics")


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


DECISIONS_TOTAL = Counter(
    "authz_decisions_total",
    "Committed authorization decisions",
    ["outcome", "reason"],
)
DECISION_LATENCY_SECONDS = Histogram(
    "authz_decision_latency_seconds",
    "Time from interception to enforcement result, excluding approval waits",
    buckets=(0.0005, 0.001, 0.0025, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2.5),
)
APPROVAL_WAIT_SECONDS = Histogram(
    "authz_approval_wait_seconds",
    "Time spent waiting on the approval service per STEP_UP",
    ["status"],
    buckets=(0.1, 0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800),
)
FAIL_CLOSED_TOTAL = Counter(
    "authz_fail_closed_total",
    "Denials caused by errors rather than by policy or intent",
    ["reason"],
)
LEDGER_CONFLICTS_TOTAL = Counter(
    "authz_ledger_conflicts_total",
    "Duplicate commits resolved by returning the stored record",
)
HTTP_REQUESTS_TOTAL = Counter(
    "authz_http_requests_total",
    "HTTP requests received",
    ["method", "route", "status"],
)
RATE_LIMIT_REJECT_TOTAL = Counter(
    "authz_rate_limit_reject_total",
    "Rate-limit rejections",
    ["endpoint"],
)
LOCKDOWN_ACTIVE = Gauge(
    "authz_lockdown_active",
    "1 while the ledger storage breaker is in lockdown",
)


def record_decision(outcome: str, reason: str) -> None:
    DECISIONS_TOTAL.labels(outcome=str(outcome), reason=str(reason)).inc()


def observe_decision_latency(seconds: float) -> None:
    DECISION_LATENCY_SECONDS.observe(max(0.0, float(seconds)))


def observe_approval_wait(status: str, seconds: float) -> None:
    APPROVAL_WAIT_SECONDS.labels(status=str(status)).observe(max(0.0, float(seconds)))


def record_fail_closed(reason: str) -> None:
    FAIL_CLOSED_TOTAL.labels(reason=str(reason)).inc()


def record_ledger_conflict() -> None:
    LEDGER_CONFLICTS_TOTAL.inc()


def record_rate_limited(endpoint: str) -> None:
    RATE_LIMIT_REJECT_TOTAL.labels(endpoint=str(endpoint)).inc()


def set_lockdown_active(active: bool) -> None:
    LOCKDOWN_ACTIVE.set(1.0 if active else 0.0)


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach request counting middleware and a /metrics route.

    authorize: callable(request) -> bool; when it returns False /metrics answers 403.
    """
    if not _env_bool("AUTHZ_METRICS_ENABLED", True):
        return

    from fastapi.responses import PlainTextResponse, Response

    @app.middleware("http")
    async def _metrics_middleware(request: Request, call_next):
        start = time.monotonic()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or "unmatched"
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            logger.debug("%s %s -> %s in %.1fms", request.method, route_path, status, (time.monotonic() - start) * 1000)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return PlainTextResponse("FORBIDDEN", status_code=403)
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
