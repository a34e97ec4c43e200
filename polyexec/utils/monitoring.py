"""Prometheus metrics for the execution core."""
from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

rate_limit_throttle_counter = Counter(
    "rate_limit_throttles_total", "Rate limiter throttles", ["bucket"]
)
order_outcome_counter = Counter(
    "order_outcomes_total", "Classified order outcomes", ["operation", "outcome", "reason"]
)
order_latency_histogram = Histogram(
    "order_latency_seconds",
    "Transport round trip for order submissions",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
)
authorization_counter = Counter(
    "safe_authorizations_total", "Safe owner-add authorizations by result", ["result"]
)


def start_metrics_server(port: int = 8000) -> None:
    """Start a Prometheus metrics HTTP server."""
    start_http_server(port)


__all__ = [
    "start_metrics_server",
    "rate_limit_throttle_counter",
    "order_outcome_counter",
    "order_latency_histogram",
    "authorization_counter",
]
