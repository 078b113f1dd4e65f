"""Prometheus metrics for the vault broker.

Labels stay low-cardinality: claim types and outcome names only. Origins,
request ids and anything user-derived never become label values.
"""
from __future__ import annotations

import os
import time
from typing import Callable, Optional

from fastapi import Request
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


def _env_bool(name: str, default: bool = True) -> bool:
    v = (os.getenv(name, "") or "").strip().lower()
    if not v:
        return default
    return v in ("1", "true", "yes", "on")


HTTP_REQUESTS_TOTAL = Counter(
    "zkv_http_requests_total",
    "Total HTTP requests received",
    ["method", "route", "status"],
)
HTTP_REQUEST_LATENCY_SECONDS = Histogram(
    "zkv_http_request_latency_seconds",
    "HTTP request latency in seconds",
    ["method", "route"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1, 5, 30, 120, 600),
)
DISCLOSURES_TOTAL = Counter(
    "zkv_disclosures_total",
    "Disclosure requests by final outcome",
    ["claim_type", "outcome"],
)
REGISTRATIONS_TOTAL = Counter(
    "zkv_registrations_total",
    "Registration attempts by outcome (ok, skipped, failed)",
    ["outcome"],
)
GENERATIONS_TOTAL = Counter(
    "zkv_attestations_generated_total",
    "Attestation generation attempts by outcome",
    ["claim_type", "outcome"],
)
PENDING_REQUESTS = Gauge(
    "zkv_pending_requests",
    "Disclosure requests currently awaiting user interaction",
)


def record_disclosure(claim_type: str, outcome: str) -> None:
    DISCLOSURES_TOTAL.labels(claim_type=str(claim_type), outcome=str(outcome)).inc()


def record_registration(outcome: str) -> None:
    REGISTRATIONS_TOTAL.labels(outcome=str(outcome)).inc()


def record_generation(claim_type: str, outcome: str) -> None:
    GENERATIONS_TOTAL.labels(claim_type=str(claim_type), outcome=str(outcome)).inc()


def set_pending(count: int) -> None:
    PENDING_REQUESTS.set(float(count))


def instrument_fastapi(app, authorize: Optional[Callable] = None) -> None:
    """Attach request metrics middleware and a ``/metrics`` endpoint.

    Disabled with ZKV_METRICS_ENABLED=0.
    """
    if not _env_bool("ZKV_METRICS_ENABLED", True):
        return

    @app.middleware("http")
    async def _metrics_middleware(request, call_next):
        start = time.time()
        status = 500
        try:
            response = await call_next(request)
            status = response.status_code
            return response
        finally:
            route = request.scope.get("route")
            route_path = getattr(route, "path", None) or request.url.path
            HTTP_REQUESTS_TOTAL.labels(method=request.method, route=route_path, status=str(status)).inc()
            HTTP_REQUEST_LATENCY_SECONDS.labels(method=request.method, route=route_path).observe(time.time() - start)

    @app.get("/metrics", include_in_schema=False)
    async def metrics_endpoint(request: Request):
        if authorize is not None and not authorize(request):
            return Response(status_code=403, content="FORBIDDEN")
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
