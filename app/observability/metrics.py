"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

import time
from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    WINDOW = "window"
    BUCKET = "bucket"
    TIER = "tier"
    ERROR_TYPE = "error_type"


class UsageGateMetrics:
    """
    Centralized metrics for the usage gate.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Admission checks (allowed/denied)
    - Consumptions (by bucket and tier)
    - Rate-limit checks (by window and outcome)
    - Credit grants and subscription transitions
    - Ledger compare-and-set conflicts
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "usage_gate_service",
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
            "usage_gate_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "usage_gate_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "usage_gate_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Usage Ledger Metrics
        # ====================================================================
        self.admission_checks_total = Counter(
            "usage_gate_admission_checks_total",
            "Total admission checks performed",
            ["allowed", MetricLabels.BUCKET],
        )

        self.consumptions_total = Counter(
            "usage_gate_consumptions_total",
            "Total successful consumptions",
            [MetricLabels.BUCKET, MetricLabels.TIER],
        )

        self.credit_grants_total = Counter(
            "usage_gate_credit_grants_total",
            "Total credit grants added",
        )

        self.credits_granted_total = Counter(
            "usage_gate_credits_granted_total",
            "Total credits granted across all grants",
        )

        self.subscription_transitions_total = Counter(
            "usage_gate_subscription_transitions_total",
            "Subscription lifecycle transitions",
            [MetricLabels.OPERATION],
        )

        self.ledger_conflicts_total = Counter(
            "usage_gate_ledger_conflicts_total",
            "Ledger compare-and-set conflicts",
            [MetricLabels.OPERATION],
        )

        self.ledger_mutation_duration_seconds = Histogram(
            "usage_gate_ledger_mutation_duration_seconds",
            "Ledger read-modify-write duration in seconds",
            [MetricLabels.OPERATION],
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        # ====================================================================
        # Rate Limit Metrics
        # ====================================================================
        self.rate_limit_checks_total = Counter(
            "usage_gate_rate_limit_checks_total",
            "Rate limit window checks",
            [MetricLabels.WINDOW, "allowed"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "usage_gate_errors_total",
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

    def record_admission(self, allowed: bool, bucket: str | None) -> None:
        """Record admission check metrics."""
        self.admission_checks_total.labels(allowed=str(allowed), bucket=bucket or "none").inc()

    def record_consumption(self, bucket: str, tier: str) -> None:
        """Record a successful debit."""
        self.consumptions_total.labels(bucket=bucket, tier=tier).inc()

    def record_credit_grant(self, count: int) -> None:
        """Record a credit grant."""
        self.credit_grants_total.inc()
        self.credits_granted_total.inc(count)

    def record_subscription_transition(self, operation: str) -> None:
        """Record a subscription lifecycle transition."""
        self.subscription_transitions_total.labels(operation=operation).inc()

    def record_ledger_conflict(self, operation: str) -> None:
        """Record a compare-and-set conflict."""
        self.ledger_conflicts_total.labels(operation=operation).inc()

    def record_ledger_mutation(self, operation: str, duration: float) -> None:
        """Record ledger mutation duration."""
        self.ledger_mutation_duration_seconds.labels(operation=operation).observe(duration)

    def record_rate_limit_check(self, window: str, allowed: bool) -> None:
        """Record a rate limit window check."""
        self.rate_limit_checks_total.labels(window=window, allowed=str(allowed)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = UsageGateMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/usage/{user_id}/consume", "POST") as tracker:
            # ... process request
            tracker.set_status_code(200)
    """

    def __init__(self, endpoint: str, method: str) -> None:
        self.endpoint = endpoint
        self.method = method
        self.status_code = 200
        self.start_time: float = 0.0

    def set_status_code(self, status_code: int) -> None:
        """Set the response status code."""
        self.status_code = status_code

    def __enter__(self) -> "track_http_request":
        """Start tracking."""
        self.start_time = time.time()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        """Record metrics."""
        duration = time.time() - self.start_time
        if exc_type is not None:
            self.status_code = 500  # Default to 500 on exception
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()
