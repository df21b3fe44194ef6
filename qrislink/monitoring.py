"""Monitoring helpers and Prometheus metrics exporters."""
from __future__ import annotations

from typing import Final

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

_HTTP_REQUEST_TOTAL: Final = Counter(
    "qrislink_http_requests_total",
    "Total HTTP requests",
    labelnames=("method", "route", "status"),
)
_HTTP_REQUEST_LATENCY: Final = Histogram(
    "qrislink_http_request_duration_seconds",
    "Latency of HTTP requests",
    labelnames=("method", "route"),
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)
_SERVICE_ERRORS_TOTAL: Final = Counter(
    "qrislink_service_errors_total",
    "Service-level errors by code",
    labelnames=("code", "route"),
)
_UNIQUE_AMOUNT_ALLOCATIONS_TOTAL: Final = Counter(
    "qrislink_unique_amount_allocations_total",
    "Unique amount reservations by outcome",
    labelnames=("outcome",),
)
_PAYMENT_MATCHES_TOTAL: Final = Counter(
    "qrislink_payment_matches_total",
    "Payment notifications attributed to an expectation, by match type",
    labelnames=("match_type",),
)
_CALLBACK_DELIVERIES_TOTAL: Final = Counter(
    "qrislink_callback_deliveries_total",
    "Outbound payment callbacks by outcome",
    labelnames=("outcome",),
)


def observe_request(method: str, route: str, status_code: int, duration_ms: float) -> None:
    _HTTP_REQUEST_TOTAL.labels(method=method, route=route, status=str(status_code)).inc()
    _HTTP_REQUEST_LATENCY.labels(method=method, route=route).observe(duration_ms / 1000)


def record_service_error(code: str, route: str) -> None:
    _SERVICE_ERRORS_TOTAL.labels(code=code, route=route).inc()


def record_allocation(outcome: str) -> None:
    _UNIQUE_AMOUNT_ALLOCATIONS_TOTAL.labels(outcome=outcome).inc()


def record_match(match_type: str) -> None:
    _PAYMENT_MATCHES_TOTAL.labels(match_type=match_type).inc()


def record_callback(outcome: str) -> None:
    _CALLBACK_DELIVERIES_TOTAL.labels(outcome=outcome).inc()


def metrics_payload() -> tuple[bytes, str]:
    """Return Prometheus exposition payload and content type."""

    return generate_latest(), CONTENT_TYPE_LATEST
