"""
Observability module - Logging, Metrics, and Tracing.
"""

from chainchat.observability.logging import get_logger, log_context, setup_logging
from chainchat.observability.metrics import metrics
from chainchat.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
