from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

CACHE_EVENTS = Counter(
    "shipyard_cache_events_total",
    "Repository cache operations recorded by Shipyard.",
    labelnames=("cache", "event"),
)
CACHE_REFRESH_LATENCY = Histogram(
    "shipyard_cache_refresh_seconds",
    "Latency of repository cache refresh operations.",
    labelnames=("cache",),
)
UPSTREAM_REQUESTS = Counter(
    "shipyard_upstream_requests_total",
    "Outbound GitHub API requests.",
    labelnames=("endpoint", "result"),
)
UPSTREAM_REQUEST_LATENCY = Histogram(
    "shipyard_upstream_request_seconds",
    "Latency of outbound GitHub API requests.",
    labelnames=("endpoint",),
)
UPSTREAM_RATE_LIMIT_REMAINING = Gauge(
    "shipyard_upstream_rate_limit_remaining",
    "Remaining GitHub API quota reported by the last response.",
)


def record_cache_event(cache: str, event: str) -> None:
    """Increment a cache event counter."""
    CACHE_EVENTS.labels(cache=cache, event=event).inc()


def observe_cache_refresh(cache: str, duration_seconds: float) -> None:
    """Record cache refresh latency."""
    CACHE_REFRESH_LATENCY.labels(cache=cache).observe(duration_seconds)


def observe_upstream_request(
    endpoint: str, result: str, duration_seconds: float
) -> None:
    """Record upstream request result and latency."""
    UPSTREAM_REQUESTS.labels(endpoint=endpoint, result=result).inc()
    UPSTREAM_REQUEST_LATENCY.labels(endpoint=endpoint).observe(duration_seconds)


def record_rate_limit_remaining(remaining: int) -> None:
    """Publish the latest upstream quota snapshot."""
    UPSTREAM_RATE_LIMIT_REMAINING.set(remaining)
