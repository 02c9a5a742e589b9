"""
Prometheus metrics for the messaging service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Socket event outcome counter (event, result)
- Live connection gauge
- Handshake authentication failure counter (reason)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: ok, validation_error, rate_limited, storage_error, unknown_event
socket_events_total = Counter(
    "socket_events_total",
    "Total inbound socket events by outcome",
    labelnames=["event", "result"]
)

live_connections = Gauge(
    "live_connections",
    "Number of users with a registered live connection"
)

auth_failures_total = Counter(
    "socket_auth_failures_total",
    "Rejected socket handshakes",
    labelnames=["reason"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)


# =============================================================================
# Helper Functions
# =============================================================================

def record_http_request(method: str, path: str, status: int, latency_seconds: float) -> None:
    """
    Record an HTTP request in metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        path: Request path
        status: HTTP status code
        latency_seconds: Request processing time in seconds
    """
    normalized_path = path.split("?")[0]

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_socket_event(event: str, result: str) -> None:
    """
    Record the outcome of one inbound socket event.

    Args:
        event: Inbound event name (send_message, typing, stop_typing, ...)
        result: ok, validation_error, rate_limited, storage_error or unknown_event
    """
    socket_events_total.labels(event=event, result=result).inc()


def record_auth_failure(reason: str) -> None:
    """
    Record a rejected socket handshake.

    Args:
        reason: Failure code - one of missing_cookie, missing_token, expired, invalid_token
    """
    auth_failures_total.labels(reason=reason).inc()


def set_live_connections(count: int) -> None:
    """
    Publish the number of users with a registered live connection.

    Args:
        count: Current size of the connection registry
    """
    live_connections.set(count)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    """
    Get the content type for Prometheus metrics.
    """
    return CONTENT_TYPE_LATEST
