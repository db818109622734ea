"""
Metrics Collection with Prometheus.

Exposes entitlement and webhook metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from bookshelf.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    ERROR_TYPE = "error_type"
    WEBHOOK_TYPE = "webhook_type"


class EntitlementMetrics:
    """
    Centralized metrics for the entitlement service.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Create-book eligibility checks and book access checks
    - Access grants (first grant vs. replay)
    - Subscription transitions
    - Webhooks (received, processed, dropped, failed, in flight)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "bookshelf_service",
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
            "bookshelf_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "bookshelf_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "bookshelf_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.create_checks_total = Counter(
            "bookshelf_create_checks_total",
            "Create-book eligibility checks",
            ["can_create", "denial"],
        )

        self.create_check_duration_seconds = Histogram(
            "bookshelf_create_check_duration_seconds",
            "Create-book eligibility check duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        self.access_checks_total = Counter(
            "bookshelf_access_checks_total",
            "Book access checks",
            ["paywalled", "has_access"],
        )

        self.grants_total = Counter(
            "bookshelf_grants_total",
            "Access grant attempts",
            ["already_had_access"],
        )

        self.subscription_transitions_total = Counter(
            "bookshelf_subscription_transitions_total",
            "Subscription transitions by target status",
            ["status", "applied"],
        )

        # ====================================================================
        # Webhook Metrics
        # ====================================================================
        self.webhooks_received_total = Counter(
            "bookshelf_webhooks_received_total",
            "Webhook deliveries received",
            [MetricLabels.WEBHOOK_TYPE],
        )

        self.webhooks_processed_total = Counter(
            "bookshelf_webhooks_processed_total",
            "Webhook processing outcomes",
            [MetricLabels.WEBHOOK_TYPE, "outcome"],
        )

        self.webhook_tasks_in_flight = Gauge(
            "bookshelf_webhook_tasks_in_flight",
            "Detached webhook tasks currently scheduled or running",
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "bookshelf_errors_total",
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

    def record_create_check(self, can_create: bool, denial: str | None, duration: float) -> None:
        """Record create-book eligibility metrics."""
        self.create_checks_total.labels(can_create=str(can_create), denial=denial or "none").inc()
        self.create_check_duration_seconds.observe(duration)

    def record_access_check(self, paywalled: bool, has_access: bool) -> None:
        """Record book access check metrics."""
        self.access_checks_total.labels(
            paywalled=str(paywalled), has_access=str(has_access)
        ).inc()

    def record_grant(self, already_had_access: bool) -> None:
        """Record access grant metrics."""
        self.grants_total.labels(already_had_access=str(already_had_access)).inc()

    def record_subscription_transition(self, status: str, applied: bool) -> None:
        """Record subscription transition metrics."""
        self.subscription_transitions_total.labels(status=status, applied=str(applied)).inc()

    def record_webhook_received(self, webhook_type: str) -> None:
        """Record webhook delivery."""
        self.webhooks_received_total.labels(webhook_type=webhook_type).inc()

    def record_webhook_outcome(self, webhook_type: str, outcome: str) -> None:
        """Record webhook processing outcome (processed, dropped, failed)."""
        self.webhooks_processed_total.labels(webhook_type=webhook_type, outcome=outcome).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = EntitlementMetrics()
