"""
Metrics Collection with Prometheus.

Exposes ledger, pricing and system metrics for monitoring.
"""

from enum import Enum
from typing import Callable

from prometheus_client import Counter, Gauge, Histogram, Info

from app.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    MOVEMENT_TYPE = "movement_type"
    REASON = "reason"
    ERROR_TYPE = "error_type"


class LedgerMetrics:
    """
    Centralized metrics for the Token Ledger API.

    Covers:
    - HTTP requests (rate, duration, in progress)
    - Ledger movements (count and token volume by type)
    - Purchases and discount resolution outcomes
    - Concurrency conflicts and errors
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "ledger_service",
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
            "ledger_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "ledger_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "ledger_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.movements_total = Counter(
            "ledger_movements_total",
            "Total movements appended",
            [MetricLabels.MOVEMENT_TYPE],
        )

        self.movement_tokens = Histogram(
            "ledger_movement_tokens",
            "Tokens moved per movement",
            [MetricLabels.MOVEMENT_TYPE],
            buckets=(1, 10, 50, 100, 500, 1000, 5000, 10000, 50000, 100000),
        )

        self.ledger_rejections_total = Counter(
            "ledger_rejections_total",
            "Ledger writes rejected by a business rule",
            [MetricLabels.MOVEMENT_TYPE, MetricLabels.REASON],
        )

        # ====================================================================
        # Pricing Metrics
        # ====================================================================
        self.purchases_total = Counter(
            "ledger_purchases_total",
            "Token purchases attempted",
            ["success", MetricLabels.REASON],
        )

        self.purchase_total_minor = Histogram(
            "ledger_purchase_total_minor",
            "Charged purchase totals in minor units",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 500000),
        )

        self.discount_code_resolutions_total = Counter(
            "ledger_discount_code_resolutions_total",
            "Discount code evaluations",
            ["applicable", MetricLabels.REASON],
        )

        self.bulk_tier_selections_total = Counter(
            "ledger_bulk_tier_selections_total",
            "Bulk discount tier selections",
            ["matched"],
        )

        # ====================================================================
        # Store Metrics
        # ====================================================================
        self.concurrency_conflicts_total = Counter(
            "ledger_concurrency_conflicts_total",
            "Writes that lost a concurrent update race",
            [MetricLabels.OPERATION],
        )

        self.errors_total = Counter(
            "ledger_errors_total",
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

    def record_movement(self, movement_type: str, amount: int) -> None:
        """Record a committed movement."""
        self.movements_total.labels(movement_type=movement_type).inc()
        self.movement_tokens.labels(movement_type=movement_type).observe(amount)

    def record_rejection(self, movement_type: str, reason: str) -> None:
        """Record a ledger write rejected before commit."""
        self.ledger_rejections_total.labels(movement_type=movement_type, reason=reason).inc()

    def record_purchase(
        self, success: bool, total_minor: int = 0, reason: str | None = None
    ) -> None:
        """Record purchase outcome."""
        self.purchases_total.labels(success=str(success), reason=reason or "none").inc()
        if success:
            self.purchase_total_minor.observe(total_minor)

    def record_code_resolution(self, applicable: bool, reason: str | None) -> None:
        """Record a discount code evaluation."""
        self.discount_code_resolutions_total.labels(
            applicable=str(applicable), reason=reason or "none"
        ).inc()

    def record_tier_selection(self, matched: bool) -> None:
        """Record whether a bulk tier applied."""
        self.bulk_tier_selections_total.labels(matched=str(matched)).inc()

    def record_conflict(self, operation: str) -> None:
        """Record a lost concurrent update."""
        self.concurrency_conflicts_total.labels(operation=operation).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = LedgerMetrics()


def get_metrics_handler() -> Callable[[], bytes]:
    """Get Prometheus metrics handler for FastAPI."""
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
