"""
Prometheus metrics for the chat relay.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Message post outcome counter (result)
- Offline queue drain counter and per-tenant depth gauge
- Durable store connectivity gauge

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# result: persisted, queued, validation_error, rejected
message_posts_total = Counter(
    "message_posts_total",
    "Total message post outcomes",
    labelnames=["result"]
)

# result: flushed, failed
queue_drain_tasks_total = Counter(
    "queue_drain_tasks_total",
    "Queued tasks processed by drain",
    labelnames=["result"]
)

queue_depth = Gauge(
    "queue_depth",
    "Tasks waiting in the offline queue",
    labelnames=["tenant"]
)

store_connected = Gauge(
    "store_connected",
    "1 when the durable store is connected, 0 otherwise"
)

# Request latency histogram in seconds
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
    # /api/media/17 -> /api/media/{id}
    if normalized_path.startswith("/api/media/"):
        normalized_path = "/api/media/{id}"

    http_requests_total.labels(
        method=method,
        path=normalized_path,
        status=str(status)
    ).inc()

    request_latency_seconds.labels(
        method=method,
        path=normalized_path
    ).observe(latency_seconds)


def record_post_outcome(result: str) -> None:
    message_posts_total.labels(result=result).inc()


def record_drain_task(result: str) -> None:
    queue_drain_tasks_total.labels(result=result).inc()


def set_queue_depth(tenant: str, depth: int) -> None:
    queue_depth.labels(tenant=tenant).set(depth)


def set_store_connected(connected: bool) -> None:
    store_connected.set(1 if connected else 0)


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
