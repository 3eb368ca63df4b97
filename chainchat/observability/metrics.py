"""
Metrics Collection with Prometheus.

Exposes metering, ledger and model-call metrics for monitoring.
"""

import time
from collections.abc import Callable
from enum import Enum

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, Info, generate_latest

from chainchat.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    MODE = "mode"
    PROVIDER = "provider"
    ERROR_TYPE = "error_type"


class ChainChatMetrics:
    """
    Centralized metrics for the ChainChat API.

    Covers:
    - HTTP requests (rate, duration)
    - Allowance checks by outcome
    - Usage debits and deposits posted to the ledger
    - Model requests, fallbacks and tool calls
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "chainchat_service",
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
            "chainchat_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "chainchat_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
        )

        self.http_requests_in_progress = Gauge(
            "chainchat_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Allowance Metrics
        # ====================================================================
        self.allowance_checks_total = Counter(
            "chainchat_allowance_checks_total",
            "Total allowance checks performed",
            ["allowed", MetricLabels.MODE],
        )

        self.allowance_check_duration_seconds = Histogram(
            "chainchat_allowance_check_duration_seconds",
            "Allowance check duration in seconds",
            buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5),
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.usage_records_total = Counter(
            "chainchat_usage_records_total",
            "Usage records posted to the ledger",
            [MetricLabels.MODE, "success"],
        )

        self.usage_tokens = Histogram(
            "chainchat_usage_tokens",
            "Total tokens per recorded request",
            buckets=(100, 500, 1000, 2500, 5000, 10000, 25000, 50000, 100000, 250000),
        )

        self.usage_recording_failures_total = Counter(
            "chainchat_usage_recording_failures_total",
            "Background usage recordings that failed after the response was streamed",
            [MetricLabels.ERROR_TYPE],
        )

        self.deposits_total = Counter(
            "chainchat_deposits_total",
            "Deposit verification attempts by outcome",
            ["outcome"],
        )

        self.deposit_token_units = Histogram(
            "chainchat_deposit_token_units",
            "Token units credited per deposit",
            buckets=(1000, 25000, 250000, 1000000, 2500000, 25000000, 250000000),
        )

        self.db_write_verifications_total = Counter(
            "chainchat_db_write_verifications_total",
            "Total write verification checks",
            ["success"],
        )

        # ====================================================================
        # Model Metrics
        # ====================================================================
        self.model_requests_total = Counter(
            "chainchat_model_requests_total",
            "Model completion steps by provider and outcome",
            [MetricLabels.PROVIDER, "success"],
        )

        self.model_fallbacks_total = Counter(
            "chainchat_model_fallbacks_total",
            "Requests retried on the fallback model",
            [MetricLabels.PROVIDER],
        )

        self.tool_calls_total = Counter(
            "chainchat_tool_calls_total",
            "Tool invocations by tool name and outcome",
            ["tool", "success"],
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "chainchat_errors_total",
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

    def record_allowance_check(self, allowed: bool, mode: str, duration: float) -> None:
        """Record allowance check metrics."""
        self.allowance_checks_total.labels(allowed=str(allowed), mode=mode).inc()
        self.allowance_check_duration_seconds.observe(duration)

    def record_usage(self, mode: str, success: bool, total_tokens: int) -> None:
        """Record a usage posting."""
        self.usage_records_total.labels(mode=mode, success=str(success)).inc()
        if success:
            self.usage_tokens.observe(total_tokens)

    def record_deposit(self, outcome: str, token_units: int = 0) -> None:
        """Record deposit verification outcome ("credited" or an error kind)."""
        self.deposits_total.labels(outcome=outcome).inc()
        if outcome == "credited":
            self.deposit_token_units.observe(token_units)

    def record_model_request(self, provider: str, success: bool) -> None:
        self.model_requests_total.labels(provider=provider, success=str(success)).inc()

    def record_tool_call(self, tool: str, success: bool) -> None:
        self.tool_calls_total.labels(tool=tool, success=str(success)).inc()

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = ChainChatMetrics()


class track_http_request:
    """
    Context manager for tracking HTTP requests.

    Usage:
        with track_http_request("/v1/credits/verify", "POST") as tracker:
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
        self.start_time = time.perf_counter()
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).inc()
        return self

    def __exit__(self, exc_type: type, exc_val: Exception, exc_tb: object) -> None:
        duration = time.perf_counter() - self.start_time
        if exc_type is not None:
            self.status_code = 500
        metrics.record_http_request(self.endpoint, self.method, self.status_code, duration)
        metrics.http_requests_in_progress.labels(
            endpoint=self.endpoint, method=self.method
        ).dec()


def get_metrics_handler() -> Callable[[], bytes]:
    """Get Prometheus metrics handler for the /metrics endpoint."""

    def metrics_endpoint() -> bytes:
        return generate_latest(REGISTRY)

    return metrics_endpoint
