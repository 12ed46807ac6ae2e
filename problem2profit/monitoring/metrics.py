"""
Prometheus metrics for marketplace monitoring.

Tracks:
- Deal creations by outcome
- Deal status changes
- Upvote toggles by direction
- Transaction retries, conflicts and timeouts
- Side-effect failures and outbox queue depth
- Webhook events
- Payments that need manual reconciliation
"""
from prometheus_client import Counter, Gauge, Histogram

# Deal metrics
deal_creations_total = Counter(
    "deal_creations_total",
    "Total deal creation attempts",
    ["outcome"],  # created, existing, failed
)

deal_creation_duration_seconds = Histogram(
    "deal_creation_duration_seconds",
    "Deal creation transaction duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

deal_status_changes_total = Counter(
    "deal_status_changes_total",
    "Total deal status transitions",
    ["status"],
)

# Upvote metrics
upvote_toggles_total = Counter(
    "upvote_toggles_total",
    "Total upvote toggles",
    ["target_type", "direction"],  # direction: added, removed
)

# Transaction metrics
transaction_retries_total = Counter(
    "transaction_retries_total",
    "Transactions retried after write contention",
    ["operation"],
)

transaction_failures_total = Counter(
    "transaction_failures_total",
    "Transactions that failed permanently",
    ["operation", "reason"],  # reason: conflict, timeout
)

# Side-effect metrics
side_effect_failures_total = Counter(
    "side_effect_failures_total",
    "Post-commit side-effect steps that failed",
    ["event_type", "step"],
)

outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_dead_letter_events = Gauge(
    "outbox_dead_letter_events",
    "Unpublished outbox events that used up their dispatch attempts",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events whose side effects all completed",
    ["event_type"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, duplicate, ignored
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

reconciliation_required_total = Counter(
    "reconciliation_required_total",
    "Captured payments whose deal or membership could not be recorded",
    ["purchase"],
)

# Integrity metrics
integrity_discrepancies = Gauge(
    "integrity_discrepancies",
    "Counter discrepancies found by the last integrity check",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_deal_creation(outcome: str, duration_seconds: float = 0) -> None:
        """Record a deal creation attempt."""
        deal_creations_total.labels(outcome=outcome).inc()
        if duration_seconds > 0:
            deal_creation_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_deal_status_change(status: str) -> None:
        """Record a deal status transition."""
        deal_status_changes_total.labels(status=status).inc()

    @staticmethod
    def record_upvote_toggle(target_type: str, added: bool) -> None:
        """Record an upvote toggle."""
        direction = "added" if added else "removed"
        upvote_toggles_total.labels(target_type=target_type, direction=direction).inc()

    @staticmethod
    def record_transaction_retry(operation: str) -> None:
        """Record a transaction retry after a conflict."""
        transaction_retries_total.labels(operation=operation).inc()

    @staticmethod
    def record_transaction_failure(operation: str, reason: str) -> None:
        """Record a transaction that gave up."""
        transaction_failures_total.labels(operation=operation, reason=reason).inc()

    @staticmethod
    def record_side_effect_failure(event_type: str, step: str) -> None:
        """Record a failed side-effect step."""
        side_effect_failures_total.labels(event_type=event_type, step=step).inc()

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        """Record an outbox event whose steps all completed."""
        outbox_events_published_total.labels(event_type=event_type).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def set_outbox_dead_letter_count(count: int) -> None:
        """Set the number of outbox events past their attempt limit."""
        outbox_dead_letter_events.set(count)

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_reconciliation_required(purchase: str = "deal") -> None:
        """Record a captured payment that produced no deal or membership."""
        reconciliation_required_total.labels(purchase=purchase).inc()

    @staticmethod
    def set_integrity_discrepancies(count: int) -> None:
        """Set the discrepancy count of the last integrity check."""
        integrity_discrepancies.set(count)


# Export singleton instance
metrics = MetricsCollector()
