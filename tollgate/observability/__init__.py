"""
Observability infrastructure for production monitoring.

Components:
- metrics.py: Prometheus metrics (counters, histograms, gauges)
- logging.py: Structured JSON logging with request context
- request_limits.py: Body size limits for inbound webhooks
"""

from tollgate.observability.metrics import (
    track_breaker_trip,
    track_cost_recorded,
    track_reconciliation_issue,
    track_usage_report,
    track_webhook_event,
)

__all__ = [
    "track_webhook_event",
    "track_breaker_trip",
    "track_cost_recorded",
    "track_usage_report",
    "track_reconciliation_issue",
]
