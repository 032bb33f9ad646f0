"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- middleware.py: Per-request Prometheus tracking
- request_limits.py: Request body and upload size limits
"""

from datafromimage.observability.metrics import (
    track_checkout_session,
    track_extraction,
    track_request,
    track_webhook_event,
)

__all__ = [
    "track_request",
    "track_checkout_session",
    "track_webhook_event",
    "track_extraction",
]
