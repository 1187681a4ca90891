"""
Prometheus metrics for the chat sync service.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Ingestion outcome counter (accepted, duplicate, malformed)
- Provider event counter (type)
- Send outcome counter
- Broadcast push / resync counters and connected session gauge
- Persistence failure counter

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

# Using default buckets: .005, .01, .025, .05, .075, .1, .25, .5, .75, 1.0, 2.5, 5.0, 7.5, 10.0
request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# result: accepted, duplicate, malformed
ingestion_events_total = Counter(
    "ingestion_events_total",
    "Message ingestion outcomes",
    labelnames=["result"]
)

provider_events_total = Counter(
    "provider_events_total",
    "Provider events taken off the inbound queue",
    labelnames=["type"]
)

# result: sent, invalid_request, not_ready, not_registered, failed
send_requests_total = Counter(
    "send_requests_total",
    "Outbound send outcomes",
    labelnames=["result"]
)

# kind: snapshot, chat, status
broadcast_pushes_total = Counter(
    "broadcast_pushes_total",
    "Payloads queued to client sessions",
    labelnames=["kind"]
)

session_resyncs_total = Counter(
    "session_resyncs_total",
    "Session queues that overflowed and were reset to a fresh snapshot"
)

persistence_failures_total = Counter(
    "persistence_failures_total",
    "Failed write-through saves of the chat store"
)

connected_sessions = Gauge(
    "connected_sessions",
    "Currently connected client sessions"
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


def record_ingestion_outcome(result: str) -> None:
    """
    Record a message ingestion outcome.

    Args:
        result: Processing result - one of:
            - "accepted": Message stored and broadcast
            - "duplicate": Matched an existing message inside the dedup window
            - "malformed": Missing required fields, dropped
    """
    ingestion_events_total.labels(result=result).inc()


def record_provider_event(event_type: str) -> None:
    provider_events_total.labels(type=event_type).inc()


def record_send_outcome(result: str) -> None:
    send_requests_total.labels(result=result).inc()


def record_broadcast(kind: str, count: int = 1) -> None:
    if count:
        broadcast_pushes_total.labels(kind=kind).inc(count)


def record_session_resync() -> None:
    session_resyncs_total.inc()


def record_persistence_failure() -> None:
    persistence_failures_total.inc()


def set_connected_sessions(count: int) -> None:
    connected_sessions.set(count)


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
