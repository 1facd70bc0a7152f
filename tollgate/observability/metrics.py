"""
Prometheus metrics for billing observability.

Metrics tracked:
- Webhook events by type and outcome (processed, duplicate, ignored, failed)
- Signature verification failures
- Cost circuit breaker trips and warnings by layer
- Spend recorded (USD)
- Usage reports by outcome
- Reconciliation issues by type, plus last-run timestamp

Exposed via the /metrics endpoint for Prometheus scraping.
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
# WEBHOOK METRICS
# ============================================================================

webhook_events_total = Counter(
    "tollgate_webhook_events_total",
    "Webhook events by type and outcome",
    labelnames=["event_type", "outcome"],
)

webhook_signature_failures_total = Counter(
    "tollgate_webhook_signature_failures_total",
    "Webhook deliveries rejected by signature verification",
    labelnames=["reason"],
)

webhook_processing_duration_seconds = Histogram(
    "tollgate_webhook_processing_duration_seconds",
    "Time spent applying a webhook event (transaction included)",
    labelnames=["event_type"],
    buckets=(0.005, 0.010, 0.025, 0.050, 0.100, 0.250, 0.500, 1.000, 2.500),
)

# ============================================================================
# COST CIRCUIT BREAKER METRICS
# ============================================================================

cost_breaker_trips_total = Counter(
    "tollgate_cost_breaker_trips_total",
    "Requests denied by the cost circuit breaker",
    labelnames=["layer"],
)

cost_breaker_warnings_total = Counter(
    "tollgate_cost_breaker_warnings_total",
    "Budget checks observed above the warning ratio",
    labelnames=["layer"],
)

cost_breaker_fail_open_total = Counter(
    "tollgate_cost_breaker_fail_open_total",
    "Budget checks allowed because the counter store was unreachable",
)

cost_recorded_usd_total = Counter(
    "tollgate_cost_recorded_usd_total",
    "Inference spend recorded in USD",
)

cost_record_failures_total = Counter(
    "tollgate_cost_record_failures_total",
    "Spend increments lost because the counter store failed",
)

# ============================================================================
# USAGE REPORTING METRICS
# ============================================================================

usage_reports_total = Counter(
    "tollgate_usage_reports_total",
    "Usage reporting attempts by outcome",
    labelnames=["outcome"],
)

# ============================================================================
# RECONCILIATION METRICS
# ============================================================================

reconciliation_issues_total = Counter(
    "tollgate_reconciliation_issues_total",
    "Reconciliation issues detected",
    labelnames=["issue_type"],
)

reconciliation_last_run_timestamp = Gauge(
    "tollgate_reconciliation_last_run_timestamp_seconds",
    "Unix time of the last completed reconciliation run",
)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================


def track_webhook_event(event_type: str, outcome: str, duration_seconds: float | None = None) -> None:
    webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
    if duration_seconds is not None:
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(duration_seconds)


def track_signature_failure(reason: str) -> None:
    webhook_signature_failures_total.labels(reason=reason).inc()


def track_breaker_trip(layer: str) -> None:
    cost_breaker_trips_total.labels(layer=layer).inc()


def track_breaker_warning(layer: str) -> None:
    cost_breaker_warnings_total.labels(layer=layer).inc()


def track_breaker_fail_open() -> None:
    cost_breaker_fail_open_total.inc()


def track_cost_recorded(amount_usd: float) -> None:
    cost_recorded_usd_total.inc(amount_usd)


def track_cost_record_failure() -> None:
    cost_record_failures_total.inc()


def track_usage_report(outcome: str) -> None:
    usage_reports_total.labels(outcome=outcome).inc()


def track_reconciliation_issue(issue_type: str, count: int = 1) -> None:
    if count > 0:
        reconciliation_issues_total.labels(issue_type=issue_type).inc(count)


def mark_reconciliation_run(timestamp: float) -> None:
    reconciliation_last_run_timestamp.set(timestamp)


def generate_metrics() -> tuple[bytes, str]:
    """
    Render all registered metrics in Prometheus exposition format.

    Returns:
        tuple: (payload, content_type)
    """
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
