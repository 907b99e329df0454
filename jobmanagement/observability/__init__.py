"""
Observability module.
Contains logging, metrics, and tracing setup.
"""

from jobmanagement.observability.logging import (
    bind_job_context,
    clear_context,
    setup_logging,
)
from jobmanagement.observability.metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
)
from jobmanagement.observability.tracing import get_tracer, setup_tracing

__all__ = [
    "setup_logging",
    "bind_job_context",
    "clear_context",
    "setup_metrics",
    "get_metrics",
    "MetricsCollector",
    "setup_tracing",
    "get_tracer",
]
