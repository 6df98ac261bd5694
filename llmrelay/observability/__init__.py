"""
llmrelay - Observability Module

- Prometheus metrics (Counter, Histogram, Gauge)
- OpenTelemetry distributed tracing
- Structured JSON logging with context injection
- Per-request trace recording with pluggable sinks

Usage:
    from llmrelay.observability import setup_observability, get_logger, get_metrics

    setup_observability(service_name="llmrelay")

    logger = get_logger(__name__)
    metrics = get_metrics()
"""

from .metrics import (
    MetricsCollector,
    get_metrics,
    setup_metrics,
    metrics_endpoint,
)
from .tracing import (
    TracingManager,
    get_tracer,
    setup_tracing,
    trace_backend_call,
    record_generation,
)
from .logging import (
    StructuredLogger,
    get_logger,
    setup_logging,
    LogContext,
    TimedOperation,
    register_secret,
)
from .recorder import (
    RequestTrace,
    ObservabilityRecorder,
    LoggingSink,
    MetricsSink,
    default_sinks,
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
    "get_tracer",
    "setup_tracing",
    "trace_backend_call",
    "record_generation",
    # Logging
    "StructuredLogger",
    "get_logger",
    "setup_logging",
    "LogContext",
    "TimedOperation",
    "register_secret",
    # Recorder
    "RequestTrace",
    "ObservabilityRecorder",
    "LoggingSink",
    "MetricsSink",
    "default_sinks",
    # Combined
    "ObservabilityMiddleware",
    "setup_observability",
]
