"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from chatcredits.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    TIER = "tier"
    SOURCE = "source"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class CreditMetrics:
    """
    Centralized metrics for the token economy.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Message charges (free vs paid, tokens debited)
    - Token credits by source (purchase, subscription, auto-topup)
    - Unlocks, subscriptions, auto-topup outcomes
    - Fail-open read fallbacks
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "chatcredits_service",
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
            "chatcredits_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "chatcredits_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "chatcredits_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Token Accounting Metrics
        # ====================================================================
        self.message_charges_total = Counter(
            "chatcredits_message_charges_total",
            "Assistant messages charged",
            ["free", MetricLabels.TIER],
        )

        self.tokens_debited_total = Counter(
            "chatcredits_tokens_debited_total",
            "Tokens removed from balances",
            [MetricLabels.SOURCE],
        )

        self.tokens_credited_total = Counter(
            "chatcredits_tokens_credited_total",
            "Tokens added to balances",
            [MetricLabels.SOURCE],
        )

        self.unlocks_total = Counter(
            "chatcredits_unlocks_total",
            "Locked message unlock attempts",
            [MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Subscription / Auto-Topup Metrics
        # ====================================================================
        self.subscriptions_created_total = Counter(
            "chatcredits_subscriptions_created_total",
            "Subscriptions created or renewed",
            [MetricLabels.TIER, MetricLabels.OPERATION],
        )

        self.auto_topups_total = Counter(
            "chatcredits_auto_topups_total",
            "Auto-topup decisions per user",
            [MetricLabels.OUTCOME],
        )

        self.auto_topup_run_duration_seconds = Histogram(
            "chatcredits_auto_topup_run_duration_seconds",
            "Auto-topup batch duration in seconds",
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        self.subscription_renewals_total = Counter(
            "chatcredits_subscription_renewals_total",
            "Renewal batch decisions per due subscription",
            [MetricLabels.OUTCOME],
        )

        self.renewal_run_duration_seconds = Histogram(
            "chatcredits_renewal_run_duration_seconds",
            "Subscription renewal batch duration in seconds",
            buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.fail_open_reads_total = Counter(
            "chatcredits_fail_open_reads_total",
            "Read paths that returned permissive defaults after a storage error",
            [MetricLabels.OPERATION],
        )

        self.errors_total = Counter(
            "chatcredits_errors_total",
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

    def record_message_charge(self, free: bool, tier: str, token_cost: int) -> None:
        """Record an assistant message charge."""
        self.message_charges_total.labels(free=str(free), tier=tier).inc()
        if token_cost > 0:
            self.tokens_debited_total.labels(source="message").inc(token_cost)

    def record_debit(self, source: str, amount: float) -> None:
        """Record tokens removed by unlocks, tips, etc."""
        self.tokens_debited_total.labels(source=source).inc(amount)

    def record_credit(self, source: str, amount: float) -> None:
        """Record tokens added to a balance."""
        self.tokens_credited_total.labels(source=source).inc(amount)

    def record_fail_open(self, operation: str) -> None:
        """Record a read path that fell back to defaults."""
        self.fail_open_reads_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = CreditMetrics()
