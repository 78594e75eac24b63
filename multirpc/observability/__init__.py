"""
multirpc - Observability Module

- Prometheus metrics
- OpenTelemetry tracing of provider calls
- Structured JSON logging with request context

Usage:
    from multirpc.observability import setup_observability, get_logger

    setup_observability(service_name="multirpc")
    logger = get_logger(__name__)
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    TraceContext,
    setup_tracing,
    get_tracer,
    get_tracing_manager,
    trace_provider_call,
)
from .logging import (
    LogContext,
    StructuredLogger,
    JSONFormatter,
    TimedOperation,
    get_logger,
    request_context,
    setup_logging,
)
from .middleware import (
    ObservabilityMiddleware,
    setup_observability,
)

__all__ = [
    # Metrics
    "MetricsCollector",
    "get_metrics",
    "setup_metrics",
    "metrics_endpoint",

    # Tracing
    "TracingManager",
    "TraceContext",
    "setup_tracing",
    "get_tracer",
    "get_tracing_manager",
    "trace_provider_call",

    # Logging
    "LogContext",
    "StructuredLogger",
    "JSONFormatter",
    "TimedOperation",
    "get_logger",
    "request_context",
    "setup_logging",

    # Middleware
    "ObservabilityMiddleware",
    "setup_observability",
]
