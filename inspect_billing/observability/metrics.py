"""
Metrics Collection with Prometheus.

Exposes ledger, reconciliation and provider metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from inspect_billing.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    KIND = "kind"
    SOURCE = "source"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class BillingMetrics:
    """
    Centralized metrics for the inspection billing API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Ledger appends by kind and source
    - Checkout reconciliation outcomes
    - Payment provider call latency and failures
    - Pricing quotes and expiry sweeps
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "inspection_billing_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "inspection_billing_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "inspection_billing_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "inspection_billing_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_entries_total = Counter(
            "inspection_billing_ledger_entries_total",
            "Ledger entries appended",
            [MetricLabels.KIND, MetricLabels.SOURCE],
        )

        self.ledger_credits_total = Counter(
            "inspection_billing_ledger_credits_total",
            "Absolute credit quantity appended to the ledger",
            [MetricLabels.KIND],
        )

        self.insufficient_credits_total = Counter(
            "inspection_billing_insufficient_credits_total",
            "Usage attempts blocked for lack of credits",
        )

        # ====================================================================
        # Reconciliation Metrics
        # ====================================================================
        self.reconciliations_total = Counter(
            "inspection_billing_reconciliations_total",
            "Checkout session reconciliations by outcome",
            [MetricLabels.KIND, MetricLabels.OUTCOME],
        )

        self.reconcile_duration_seconds = Histogram(
            "inspection_billing_reconcile_duration_seconds",
            "Reconciliation duration in seconds",
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Payment Provider Metrics
        # ====================================================================
        self.provider_calls_total = Counter(
            "inspection_billing_provider_calls_total",
            "Payment provider calls",
            [MetricLabels.OPERATION, "success"],
        )

        self.provider_call_duration_seconds = Histogram(
            "inspection_billing_provider_call_duration_seconds",
            "Payment provider call duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        # ====================================================================
        # Pricing & Sweep Metrics
        # ====================================================================
        self.pricing_quotes_total = Counter(
            "inspection_billing_pricing_quotes_total",
            "Pricing quotes computed",
            ["currency", "converted"],
        )

        self.credits_expired_total = Counter(
            "inspection_billing_credits_expired_total",
            "Credits retired by the expiry sweep",
        )

        # ====================================================================
        # Event Stream Metrics
        # ====================================================================
        self.event_subscribers = Gauge(
            "inspection_billing_event_subscribers",
            "Open ledger event stream subscribers",
        )

        self.events_dropped_total = Counter(
            "inspection_billing_events_dropped_total",
            "Ledger events dropped because a subscriber queue was full",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "inspection_billing_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_ledger_entry(self, kind: str, source: str, quantity: int) -> None:
        """Record a ledger append."""
        self.ledger_entries_total.labels(kind=kind, source=source).inc()
        self.ledger_credits_total.labels(kind=kind).inc(abs(quantity))

    def record_reconciliation(self, kind: str, outcome: str, duration: float) -> None:
        """Record a reconciliation attempt."""
        self.reconciliations_total.labels(kind=kind, outcome=outcome).inc()
        self.reconcile_duration_seconds.observe(duration)

    def record_provider_call(self, operation: str, success: bool, duration: float) -> None:
        """Record a payment provider call."""
        self.provider_calls_total.labels(operation=operation, success=str(success)).inc()
        self.provider_call_duration_seconds.labels(operation=operation).observe(duration)

    def record_pricing_quote(self, currency: str, converted: bool) -> None:
        """Record a pricing computation."""
        self.pricing_quotes_total.labels(currency=currency, converted=str(converted)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = BillingMetrics()
