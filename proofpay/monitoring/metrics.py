"""
Prometheus metrics for receipt monitoring.

Tracks:
- Receipt ingestion outcomes
- Share token issuance
- Token verification outcomes by channel
- Dispute counts and disputed amounts
- Square API calls
- Webhook event processing
"""
from prometheus_client import Counter, Gauge, Histogram

# Ingestion metrics
receipts_ingested_total = Counter(
    "receipts_ingested_total",
    "Total receipts ingested",
    ["outcome"],  # created, duplicate
)

receipt_items_ingested_total = Counter(
    "receipt_items_ingested_total",
    "Total receipt line items ingested",
)

receipt_item_failures_total = Counter(
    "receipt_item_failures_total",
    "Total receipt item bulk inserts that failed",
)

# Share token metrics
share_tokens_issued_total = Counter(
    "share_tokens_issued_total",
    "Total share tokens handed out",
    ["outcome"],  # created, reused
)

share_tokens_voided_total = Counter(
    "share_tokens_voided_total",
    "Total share tokens voided",
)

token_verifications_total = Counter(
    "token_verifications_total",
    "Total token resolutions",
    ["channel", "state"],  # channel: view, verify
)

# Dispute metrics
disputes_created_total = Counter(
    "disputes_created_total",
    "Total disputes created",
    ["reason_code"],
)

disputed_amount_cents = Histogram(
    "disputed_amount_cents",
    "Disputed subtotal in cents",
    buckets=(100, 500, 1000, 2500, 5000, 10000, 50000, 100000, 500000),
)

# Square API metrics
upstream_requests_total = Counter(
    "upstream_requests_total",
    "Total Square API requests",
    ["operation", "status"],  # operation: get_payment, get_order
)

upstream_request_duration_seconds = Histogram(
    "upstream_request_duration_seconds",
    "Square API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

upstream_circuit_breaker_state = Gauge(
    "upstream_circuit_breaker_state",
    "Square circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, ignored, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Audit trail metrics
event_sink_failures_total = Counter(
    "event_sink_failures_total",
    "Total audit events that could not be recorded",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_receipt_ingested(outcome: str, item_count: int = 0) -> None:
        """Record a receipt ingestion."""
        receipts_ingested_total.labels(outcome=outcome).inc()
        if item_count:
            receipt_items_ingested_total.inc(item_count)

    @staticmethod
    def record_item_failure() -> None:
        receipt_item_failures_total.inc()

    @staticmethod
    def record_share_issued(outcome: str) -> None:
        """Record a share token handed out."""
        share_tokens_issued_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_share_voided() -> None:
        share_tokens_voided_total.inc()

    @staticmethod
    def record_verification(channel: str, state: str) -> None:
        """Record a token resolution."""
        token_verifications_total.labels(channel=channel, state=state).inc()

    @staticmethod
    def record_dispute(reason_code: str, total_cents: int) -> None:
        """Record a dispute submission."""
        disputes_created_total.labels(reason_code=reason_code).inc()
        disputed_amount_cents.observe(total_cents)

    @staticmethod
    def record_upstream_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a Square API call."""
        upstream_requests_total.labels(operation=operation, status=status).inc()
        upstream_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        upstream_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_event_sink_failure() -> None:
        event_sink_failures_total.inc()


# Export singleton instance
metrics = MetricsCollector()
