"""
Observability module - Logging, Metrics, and Tracing.
"""

from chatcredits.observability.logging import get_logger, log_context, setup_logging
from chatcredits.observability.metrics import metrics
from chatcredits.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
