"""
Prometheus metrics for production observability.

Metrics tracked:
- Request latency (histogram) per endpoint
- Request count (counter) with status codes
- Active requests (gauge)
- Identity token cache hit rate (counter)
- Checkout sessions created (counter) per price tier
- Webhook events (counter) by type and outcome
- Credits granted, debited and restored (counters)
- Vision model call latency and success (histogram, counter)
- Error rates (counter) by error type

Integration:
- Exposed via /metrics endpoint (Prometheus scraping)
"""

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# ============================================================================
# REQUEST METRICS
# ============================================================================

# Extraction requests wait on a remote model, so buckets reach into tens of seconds
http_request_duration_seconds = Histogram(
    "datafromimage_http_request_duration_seconds",
    "HTTP request latency in seconds",
    labelnames=["method", "endpoint", "status_code"],
    buckets=(
        0.005,  # 5ms
        0.025,  # 25ms
        0.100,  # 100ms
        0.250,  # 250ms
        0.500,  # 500ms
        1.000,  # 1s
        2.500,  # 2.5s
        5.000,  # 5s
        10.000,  # 10s
        30.000,  # 30s
        60.000,  # 60s
    ),
)

http_requests_total = Counter(
    "datafromimage_http_requests_total",
    "Total HTTP requests",
    labelnames=["method", "endpoint", "status_code"],
)

http_requests_active = Gauge(
    "datafromimage_http_requests_active",
    "Number of in-flight HTTP requests",
    labelnames=["method"],
)

# ============================================================================
# AUTHENTICATION METRICS
# ============================================================================

identity_cache_hits_total = Counter(
    "datafromimage_identity_cache_hits_total",
    "Total access token cache hits",
)

identity_cache_misses_total = Counter(
    "datafromimage_identity_cache_misses_total",
    "Total access token cache misses (identity provider round trip)",
)

# ============================================================================
# BILLING METRICS
# ============================================================================

checkout_sessions_total = Counter(
    "datafromimage_checkout_sessions_total",
    "Checkout session creation attempts",
    labelnames=["price_tier", "success"],
)

webhook_events_total = Counter(
    "datafromimage_webhook_events_total",
    "Payment webhook deliveries by outcome",
    labelnames=["event_type", "outcome"],
)

credits_granted_total = Counter(
    "datafromimage_credits_granted_total",
    "Credits added to accounts by completed payments",
)

credits_debited_total = Counter(
    "datafromimage_credits_debited_total",
    "Credits consumed by extraction requests",
)

credits_restored_total = Counter(
    "datafromimage_credits_restored_total",
    "Credits returned after a failed extraction",
)

# ============================================================================
# VISION MODEL METRICS
# ============================================================================

vision_call_total = Counter(
    "datafromimage_vision_call_total",
    "Total vision model calls (one per image)",
    labelnames=["model_name", "success"],
)

vision_call_duration_seconds = Histogram(
    "datafromimage_vision_call_duration_seconds",
    "Individual vision model call latency",
    labelnames=["model_name"],
    buckets=(0.5, 1.0, 2.0, 3.0, 5.0, 10.0, 15.0, 30.0, 60.0),
)

extractions_total = Counter(
    "datafromimage_extractions_total",
    "Extraction requests by outcome",
    labelnames=["outcome"],
)

# ============================================================================
# ERROR METRICS
# ============================================================================

errors_total = Counter(
    "datafromimage_errors_total",
    "Total errors by type",
    labelnames=["error_type", "endpoint"],
)

rate_limit_exceeded_total = Counter(
    "datafromimage_rate_limit_exceeded_total",
    "Total rate limit violations",
    labelnames=["endpoint"],
)

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_request(
    method: str,
    endpoint: str,
    status_code: int,
    duration_seconds: float,
) -> None:
    """
    Track HTTP request metrics.

    Args:
        method: HTTP method (GET, POST, etc.)
        endpoint: API endpoint path
        status_code: HTTP status code
        duration_seconds: Request duration in seconds
    """
    http_request_duration_seconds.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).observe(duration_seconds)

    http_requests_total.labels(
        method=method,
        endpoint=endpoint,
        status_code=status_code,
    ).inc()


def track_identity_cache_hit() -> None:
    identity_cache_hits_total.inc()


def track_identity_cache_miss() -> None:
    identity_cache_misses_total.inc()


def track_checkout_session(price_tier: str, success: bool) -> None:
    checkout_sessions_total.labels(
        price_tier=price_tier,
        success="true" if success else "false",
    ).inc()


def track_webhook_event(event_type: str, outcome: str) -> None:
    """
    Track a webhook delivery.

    Args:
        event_type: Processor event type (checkout.session.completed, ...)
        outcome: processed, duplicate, ignored, or the failing error code
    """
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()


def track_credits_granted(credits: int) -> None:
    credits_granted_total.inc(credits)


def track_credits_debited(credits: int) -> None:
    credits_debited_total.inc(credits)


def track_credits_restored(credits: int) -> None:
    credits_restored_total.inc(credits)


def track_vision_call(
    model_name: str,
    success: bool,
    duration_seconds: float | None = None,
) -> None:
    """
    Track individual vision model call.

    Args:
        model_name: Model identifier (gpt-4o, ...)
        success: Whether call succeeded
        duration_seconds: Optional call duration
    """
    vision_call_total.labels(
        model_name=model_name,
        success="true" if success else "false",
    ).inc()

    if duration_seconds is not None:
        vision_call_duration_seconds.labels(model_name=model_name).observe(duration_seconds)


def track_extraction(outcome: str) -> None:
    """Outcome is one of: success, insufficient_credits, inference_failure, persistence_failure."""
    extractions_total.labels(outcome=outcome).inc()


def track_error(error_type: str, endpoint: str) -> None:
    """
    Track error occurrence.

    Args:
        error_type: Error type (validation, signature_invalid, ...)
        endpoint: API endpoint where error occurred
    """
    errors_total.labels(
        error_type=error_type,
        endpoint=endpoint,
    ).inc()


def track_rate_limit_exceeded(endpoint: str) -> None:
    rate_limit_exceeded_total.labels(endpoint=endpoint).inc()


def generate_metrics() -> tuple[bytes, str]:
    """
    Generate Prometheus metrics in exposition format (bytes).

    Returns:
        tuple: (metrics_bytes, content_type)
    """
    metrics_data = generate_latest(REGISTRY)
    return metrics_data, CONTENT_TYPE_LATEST
