"""Prometheus metrics, Sentry integration, and transition tracking.

Provides:
- MetricsMiddleware: ASGI middleware for HTTP request metrics
- init_sentry(): Initialize Sentry with request-context tagging
- track_transition(): Context manager for deal transition metrics
- get_metrics_response(): Response body for /metrics
"""

from __future__ import annotations

import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from prometheus_client import (
    REGISTRY,
    Counter,
    Histogram,
    generate_latest,
)
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

logger = structlog.get_logger(__name__)

# ── HTTP Metrics ─────────────────────────────────────────────────────────────

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── CRM Metrics ──────────────────────────────────────────────────────────────

crm_deal_transitions_total = Counter(
    "crm_deal_transitions_total",
    "Deal transition attempts by outcome",
    ["operation", "outcome"],
)

crm_deal_transition_duration_seconds = Histogram(
    "crm_deal_transition_duration_seconds",
    "Duration of a deal transition unit of work in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

crm_auto_enrollments_total = Counter(
    "crm_auto_enrollments_total",
    "Auto-enrollment attempts into the Active Members pipeline",
    ["outcome"],
)

crm_board_events_total = Counter(
    "crm_board_events_total",
    "Board change notifications by publish status",
    ["status"],
)


# ── Metrics Middleware ───────────────────────────────────────────────────────


class MetricsMiddleware(BaseHTTPMiddleware):
    """ASGI middleware that records Prometheus metrics for every HTTP request.

    Uses the matched route's path template as the endpoint label so that
    ids in the URL do not explode label cardinality. Skips /metrics itself.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/metrics":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration = time.perf_counter() - start_time

        route = request.scope.get("route")
        endpoint = getattr(route, "path", None) or request.url.path

        http_requests_total.labels(
            method=request.method,
            endpoint=endpoint,
            status_code=str(response.status_code),
        ).inc()

        http_request_duration_seconds.labels(
            method=request.method,
            endpoint=endpoint,
        ).observe(duration)

        return response


# ── Transition Metrics Helper ───────────────────────────────────────────────


@asynccontextmanager
async def track_transition(operation: str) -> AsyncGenerator[dict[str, Any], None]:
    """Context manager that tracks one transition's outcome and duration.

    Usage:
        async with track_transition("move") as tracker:
            result = await do_move(...)
            tracker["outcome"] = "no_op" if result.no_op else "moved"

    Failures are recorded under the exception's ``code`` attribute when it
    has one, otherwise as "error".
    """
    tracker: dict[str, Any] = {"outcome": "ok"}
    start_time = time.perf_counter()

    try:
        yield tracker
    except Exception as exc:
        tracker["outcome"] = getattr(exc, "code", "error")
        raise
    finally:
        crm_deal_transitions_total.labels(
            operation=operation,
            outcome=tracker["outcome"],
        ).inc()
        crm_deal_transition_duration_seconds.labels(operation=operation).observe(
            time.perf_counter() - start_time
        )


# ── Sentry Integration ───────────────────────────────────────────────────────


def init_sentry(dsn: str, environment: str) -> None:
    """Initialize Sentry SDK, tagging events with the request's bound context.

    Args:
        dsn: Sentry DSN string.
        environment: Deployment environment (development, staging, production).
    """
    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.starlette import StarletteIntegration

    traces_sample_rate = 0.1 if environment == "production" else 1.0

    def before_send(event: dict, hint: dict) -> dict:
        """Copy request_id and actor_id from structlog's contextvars into tags."""
        context = structlog.contextvars.get_contextvars()
        tags = event.setdefault("tags", {})
        for key in ("request_id", "actor_id"):
            if context.get(key):
                tags[key] = context[key]
        return event

    sentry_sdk.init(
        dsn=dsn,
        environment=environment,
        traces_sample_rate=traces_sample_rate,
        integrations=[
            StarletteIntegration(),
            FastApiIntegration(),
        ],
        before_send=before_send,
    )
    logger.info("sentry_initialized", environment=environment)


# ── Metrics Endpoint ─────────────────────────────────────────────────────────


def get_metrics_response() -> Response:
    """Generate Prometheus exposition format response."""
    return Response(
        content=generate_latest(REGISTRY),
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )
