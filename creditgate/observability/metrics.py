"""
Metrics Collection with Prometheus.

Exposes credential, admission and ledger metrics for monitoring.
"""

from decimal import Decimal
from enum import Enum
from typing import Callable

from prometheus_client import Counter, Histogram, Info

from creditgate.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    OUTCOME = "outcome"
    OPERATION = "operation"
    MODE = "mode"
    ERROR_TYPE = "error_type"


class GatewayMetrics:
    """
    Centralized metrics for the credit gateway core.

    Covers:
    - Credential refreshes (outcome, duration)
    - Admission reservations (granted / insufficient / degraded)
    - Remote authority calls (errors)
    - Local ledger compare-and-set conflicts and exhaustion
    - Credits charged
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        self.service_info = Info(
            "creditgate_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # Credential Metrics
        # ====================================================================
        self.credential_refreshes_total = Counter(
            "creditgate_credential_refreshes_total",
            "Outbound refresh-grant calls by outcome",
            [MetricLabels.OUTCOME],
        )

        self.credential_refresh_duration_seconds = Histogram(
            "creditgate_credential_refresh_duration_seconds",
            "Token exchange duration in seconds",
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.credential_refresh_joins_total = Counter(
            "creditgate_credential_refresh_joins_total",
            "Callers that awaited an already in-flight refresh",
        )

        # ====================================================================
        # Admission Metrics
        # ====================================================================
        self.reservations_total = Counter(
            "creditgate_reservations_total",
            "Balance reservations by outcome",
            [MetricLabels.OUTCOME],
        )

        self.remote_errors_total = Counter(
            "creditgate_remote_errors_total",
            "Metering authority failures",
            [MetricLabels.OPERATION, MetricLabels.ERROR_TYPE],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_conflicts_total = Counter(
            "creditgate_ledger_conflicts_total",
            "Compare-and-set conflicts on the local ledger",
        )

        self.ledger_exhausted_total = Counter(
            "creditgate_ledger_exhausted_total",
            "Local ledger writes abandoned after bounded retries",
        )

        # ====================================================================
        # Charge Metrics
        # ====================================================================
        self.credits_charged_total = Counter(
            "creditgate_credits_charged_total",
            "Credits charged to users",
            [MetricLabels.MODE],
        )

        self.charge_failures_total = Counter(
            "creditgate_charge_failures_total",
            "Charges that failed after the audit record was written",
            [MetricLabels.MODE, MetricLabels.ERROR_TYPE],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_refresh(self, outcome: str, duration: float | None = None) -> None:
        """Record a refresh-grant call."""
        self.credential_refreshes_total.labels(outcome=outcome).inc()
        if duration is not None:
            self.credential_refresh_duration_seconds.observe(duration)

    def record_reservation(self, outcome: str) -> None:
        """Record an admission decision."""
        self.reservations_total.labels(outcome=outcome).inc()

    def record_remote_error(self, operation: str, error_type: str) -> None:
        """Record a metering authority failure."""
        self.remote_errors_total.labels(operation=operation, error_type=error_type).inc()

    def record_charge(self, mode: str, credits: Decimal) -> None:
        """Record credits charged."""
        if credits > 0:
            self.credits_charged_total.labels(mode=mode).inc(float(credits))

    def record_charge_failure(self, mode: str, error_type: str) -> None:
        """Record a failed charge."""
        self.charge_failures_total.labels(mode=mode, error_type=error_type).inc()


# Global metrics instance
metrics = GatewayMetrics()


def get_metrics_handler() -> Callable[[], bytes]:
    """
    Get Prometheus metrics handler for FastAPI.

    Usage:
        handler = get_metrics_handler()
        return PlainTextResponse(handler())
    """
    from prometheus_client import REGISTRY, generate_latest

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
