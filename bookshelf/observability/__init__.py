"""
Observability module - Logging, Metrics, and Tracing.
"""

from bookshelf.observability.logging import get_logger, log_context, setup_logging
from bookshelf.observability.metrics import metrics
from bookshelf.observability.tracing import setup_tracing, trace_operation

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
    "trace_operation",
]
