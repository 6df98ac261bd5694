"""
llmrelay - OpenTelemetry Distributed Tracing

Span layout for one routed request:

    POST /v1/route              SERVER   (ObservabilityMiddleware)
    └── llmrelay.route          INTERNAL (RelayService.route)
        ├── groq.generate       CLIENT   (one per adapter invocation)
        └── gemini.generate     CLIENT

Incoming W3C traceparent headers are continued. Spans are exported over OTLP
when OTEL_EXPORTER_OTLP_ENDPOINT is set and opentelemetry-exporter-otlp is
installed, or to the console with OTEL_CONSOLE_EXPORT=true.
"""

import os
from typing import Optional, Dict, Any, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.resources import Resource, SERVICE_NAME, SERVICE_VERSION
from opentelemetry.trace.propagation.tracecontext import TraceContextTextMapPropagator
from opentelemetry.propagate import set_global_textmap, extract
from opentelemetry.trace import Span, SpanKind, Status, StatusCode

from ..core.errors import RelayError

# Optional OTLP exporter (requires opentelemetry-exporter-otlp)
try:
    from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
    OTLP_AVAILABLE = True
except ImportError:
    OTLP_AVAILABLE = False


# Span attribute keys
ATTR_BACKEND = "llm.backend"
ATTR_MODEL = "llm.model"
ATTR_OPERATION = "llm.operation"
ATTR_PROMPT_TOKENS = "llm.tokens.prompt"
ATTR_COMPLETION_TOKENS = "llm.tokens.completion"
ATTR_COST = "llm.cost"
ATTR_FINISH_REASON = "llm.finish_reason"
ATTR_ERROR_KIND = "llmrelay.error_kind"
ATTR_RETRYABLE = "llmrelay.retryable"


@dataclass
class TraceContext:
    """Hex-formatted identifiers of a span, as they appear in logs and headers."""
    trace_id: str
    span_id: str
    trace_flags: int = 1

    @classmethod
    def from_span(cls, span: Span) -> "TraceContext":
        ctx = span.get_span_context()
        return cls(
            trace_id=format(ctx.trace_id, "032x"),
            span_id=format(ctx.span_id, "016x"),
            trace_flags=ctx.trace_flags,
        )

    def to_traceparent(self) -> str:
        return f"00-{self.trace_id}-{self.span_id}-{self.trace_flags:02x}"


class TracingManager:
    """
    Owns the tracer provider for the process.

    Spans come from this manager's own provider, so they are recorded even
    when another global provider was installed first.
    """

    def __init__(
        self,
        service_name: str = "llmrelay",
        service_version: str = "0.1.0",
        otlp_endpoint: Optional[str] = None,
        console_export: bool = False,
    ):
        self.service_name = service_name
        self.service_version = service_version

        self.provider = TracerProvider(resource=Resource.create({
            SERVICE_NAME: service_name,
            SERVICE_VERSION: service_version,
            "deployment.environment": os.getenv("RELAY_ENV", "local"),
        }))

        if otlp_endpoint and OTLP_AVAILABLE:
            self.provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=otlp_endpoint)))
        if console_export:
            self.provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

        trace.set_tracer_provider(self.provider)
        set_global_textmap(TraceContextTextMapPropagator())

        self.tracer = self.provider.get_tracer(service_name, service_version)

    def start_span(
        self,
        name: str,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """Context manager yielding a child of the current span."""
        return self.tracer.start_as_current_span(name, kind=kind, attributes=attributes)

    def start_server_span(
        self,
        name: str,
        headers: Dict[str, str],
        attributes: Optional[Dict[str, Any]] = None,
    ):
        """Server span whose parent is taken from the request's traceparent, if any."""
        parent_context = extract({k.lower(): v for k, v in headers.items()})
        return self.tracer.start_as_current_span(
            name,
            kind=SpanKind.SERVER,
            attributes=attributes,
            context=parent_context,
        )

    def get_current_trace_context(self) -> Optional[TraceContext]:
        span = trace.get_current_span()
        if span.get_span_context().is_valid:
            return TraceContext.from_span(span)
        return None

    def shutdown(self):
        self.provider.shutdown()


_tracing_instance: Optional[TracingManager] = None


def setup_tracing(
    service_name: str = "llmrelay",
    service_version: str = "0.1.0",
    otlp_endpoint: Optional[str] = None,
    console_export: bool = False,
) -> TracingManager:
    """
    Replace the process tracing manager.

    OTEL_EXPORTER_OTLP_ENDPOINT and OTEL_CONSOLE_EXPORT are read when the
    arguments are not given.
    """
    global _tracing_instance

    if otlp_endpoint is None:
        otlp_endpoint = os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")
    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    _tracing_instance = TracingManager(
        service_name=service_name,
        service_version=service_version,
        otlp_endpoint=otlp_endpoint,
        console_export=console_export,
    )
    return _tracing_instance


def get_tracing_manager() -> TracingManager:
    """The process tracing manager, created with defaults on first use."""
    global _tracing_instance
    if _tracing_instance is None:
        _tracing_instance = TracingManager()
    return _tracing_instance


def get_tracer() -> trace.Tracer:
    return get_tracing_manager().tracer


@contextmanager
def trace_backend_call(backend: str, model: str, operation: str = "generate") -> Iterator[Span]:
    """
    Client span around one adapter invocation.

    A RelayError leaving the block tags the span with its kind and
    retryability before propagating.

    Usage:
        with trace_backend_call("groq", "llama-3.1-70b-versatile") as span:
            result = await self._generate(ctx)
            record_generation(span, result)
    """
    with get_tracing_manager().start_span(
        f"{backend}.{operation}",
        kind=SpanKind.CLIENT,
        attributes={
            ATTR_BACKEND: backend,
            ATTR_MODEL: model,
            ATTR_OPERATION: operation,
        },
    ) as span:
        try:
            yield span
        except RelayError as e:
            span.set_attribute(ATTR_ERROR_KIND, e.kind.value)
            span.set_attribute(ATTR_RETRYABLE, e.retryable)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise


def record_generation(span: Span, result: Any) -> None:
    """Copy usage and cost of a GenerationResult onto its span."""
    span.set_attribute(ATTR_PROMPT_TOKENS, result.usage.prompt_tokens)
    span.set_attribute(ATTR_COMPLETION_TOKENS, result.usage.completion_tokens)
    span.set_attribute(ATTR_COST, result.cost)
    if result.finish_reason:
        span.set_attribute(ATTR_FINISH_REASON, result.finish_reason)
