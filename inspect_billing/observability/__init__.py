"""
Observability module - Logging, Metrics, and Tracing.
"""

from inspect_billing.observability.logging import get_logger, log_context, setup_logging
from inspect_billing.observability.metrics import metrics
from inspect_billing.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
