"""
Prometheus metrics for the chat ingestion service.

This module provides:
- HTTP request counter (method, path, status)
- Request latency histogram (method, path)
- Webhook event counter (event, result)
- Media retrieval outcome counter (result)
- Health probe counter (health)
- Realtime notification counter (table, type)

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

# HTTP request counter with labels for method, path, and status code
http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

# Request latency histogram in seconds
# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# Webhook processing outcome counter
# result: processed, ignored, duplicate, invalid_envelope, unknown_instance, error
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events by kind and outcome",
    labelnames=["event", "result"]
)

# result: completed, failed, skipped
media_retrievals_total = Counter(
    "media_retrievals_total",
    "Media retrieval attempts by outcome",
    labelnames=["result"]
)

health_probes_total = Counter(
    "health_probes_total",
    "Connection health probes by resulting health status",
    labelnames=["health"]
)

realtime_notifications_total = Counter(
    "realtime_notifications_total",
    "Change notifications published to realtime subscribers",
    labelnames=["table", "type"]
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
    # Normalize path to avoid high-cardinality labels
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


def record_webhook_outcome(event: str, result: str) -> None:
    """
    Record a webhook processing outcome.

    Args:
        event: Normalized event kind ("message-upsert", ...) or "unknown"
        result: Processing result
    """
    webhook_events_total.labels(event=event, result=result).inc()


def record_media_outcome(result: str) -> None:
    media_retrievals_total.labels(result=result).inc()


def record_health_probe(health: str) -> None:
    health_probes_total.labels(health=health).inc()


def record_realtime_notification(table: str, change_type: str) -> None:
    realtime_notifications_total.labels(table=table, type=change_type).inc()


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

    Returns:
        Content type string for Prometheus exposition format
    """
    return CONTENT_TYPE_LATEST
