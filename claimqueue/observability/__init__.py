"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from claimqueue.observability.logging import get_logger, job_log_context, setup_logging
from claimqueue.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from claimqueue.observability.tracing import get_tracer, setup_tracing, traced

__all__ = [
    "setup_logging",
    "get_logger",
    "job_log_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
    "traced",
]
