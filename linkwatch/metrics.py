"""
Prometheus metrics for the link watcher.

This module provides:
- HTTP request counter (method, path, status) and latency histogram
- Pipeline counters: messages processed, links found, upsert outcomes
- Shortener resolution and history page counters

Metrics are stored in-memory using prometheus-client.
"""

from prometheus_client import Counter, Histogram, generate_latest, CONTENT_TYPE_LATEST


# =============================================================================
# Metric Definitions
# =============================================================================

http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "path", "status"]
)

request_latency_seconds = Histogram(
    "request_latency_seconds",
    "Request latency in seconds",
    labelnames=["method", "path"]
)

# source: live, history
messages_processed_total = Counter(
    "linkwatch_messages_processed_total",
    "Messages run through the link pipeline",
    labelnames=["source"]
)

links_found_total = Counter(
    "linkwatch_links_found_total",
    "Candidate links extracted from messages",
)

# result: inserted, updated, noop, error
link_upserts_total = Counter(
    "linkwatch_link_upserts_total",
    "Link store upsert outcomes",
    labelnames=["result"]
)

# outcome: resolved, passthrough, failed
link_resolutions_total = Counter(
    "linkwatch_link_resolutions_total",
    "Shortener resolution outcomes",
    labelnames=["outcome"]
)

# result: ok, empty, forbidden, error
history_pages_total = Counter(
    "linkwatch_history_pages_total",
    "Historical message page fetches",
    labelnames=["result"]
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


def record_message_processed(source: str, links: int) -> None:
    messages_processed_total.labels(source=source).inc()
    if links:
        links_found_total.inc(links)


def record_upsert(result: str) -> None:
    link_upserts_total.labels(result=result).inc()


def record_resolution(outcome: str) -> None:
    link_resolutions_total.labels(outcome=outcome).inc()


def record_history_page(result: str) -> None:
    history_pages_total.labels(result=result).inc()


def get_metrics() -> bytes:
    """
    Generate Prometheus exposition format metrics.

    Returns:
        Metrics in Prometheus text format as bytes
    """
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
