"""
Prometheus metrics for ledger reconciliation monitoring.

Tracks:
- Webhook events received/processed and their latency
- Reconciliation outcomes and anomalies
- Ledger write conflicts
- Gateway API calls and errors
- Lock acquisitions
"""
from prometheus_client import Counter, Gauge, Histogram

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, duplicate, ignored, failed, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
reconciliation_outcomes_total = Counter(
    "reconciliation_outcomes_total",
    "Reconciliation handler outcomes",
    ["handler", "outcome"],
)

reconciliation_anomalies_total = Counter(
    "reconciliation_anomalies_total",
    "Records needing manual review (orphans, overpayments, stale events)",
    ["kind"],
)

ledger_conflicts_total = Counter(
    "ledger_conflicts_total",
    "Concurrent inserts that lost a unique-index race",
    ["handler"],
)

# Gateway API metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total gateway API requests",
    ["operation", "status"],
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total gateway API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Gateway API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Lock metrics
lock_acquisitions_total = Counter(
    "lock_acquisitions_total",
    "Total reconciliation lock acquisitions",
    ["backend", "status"],  # acquired, timeout
)

lock_wait_seconds = Histogram(
    "lock_wait_seconds",
    "Time spent waiting for a reconciliation lock",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_reconciliation(handler: str, outcome: str) -> None:
        """Record a reconciliation handler outcome."""
        reconciliation_outcomes_total.labels(handler=handler, outcome=outcome).inc()

    @staticmethod
    def record_anomaly(kind: str) -> None:
        """Record a ledger anomaly flagged for manual review."""
        reconciliation_anomalies_total.labels(kind=kind).inc()

    @staticmethod
    def record_ledger_conflict(handler: str) -> None:
        """Record a lost insert race."""
        ledger_conflicts_total.labels(handler=handler).inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record gateway API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record gateway API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_lock(backend: str, status: str, wait_seconds: float = 0) -> None:
        """Record lock acquisition."""
        lock_acquisitions_total.labels(backend=backend, status=status).inc()
        if wait_seconds > 0:
            lock_wait_seconds.observe(wait_seconds)


# Export singleton instance
metrics = MetricsCollector()
