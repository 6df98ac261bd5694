"""
llmrelay - Observability Tests

Tests for the observability stack:
- Request trace recording and sink isolation
- Prometheus metrics fed by the metrics sink
- OpenTelemetry tracing
- Structured logging
- Middleware integration
"""

import json
import logging
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from starlette.responses import JSONResponse
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from llmrelay.core.models import AttemptOutcome, AttemptTrace, TokenUsage
from llmrelay.observability.logging import (
    JSONFormatter,
    KeyValueFormatter,
    LogContext,
    TimedOperation,
    get_logger,
    register_secret,
)
from llmrelay.observability.metrics import CIRCUIT_STATE_VALUES, get_metrics
from llmrelay.observability.middleware import (
    ObservabilityMiddleware,
    resolve_request_id,
    setup_observability,
)
from llmrelay.observability.recorder import (
    LoggingSink,
    MetricsSink,
    ObservabilityRecorder,
    build_trace,
    count_outcomes,
)
from llmrelay.observability.tracing import TraceContext, TracingManager, get_tracing_manager


def fallback_trace(**overrides):
    """b1 fails with a server error, b2 answers."""
    fields = dict(
        request_id="req_test",
        tier="medium",
        chain=["b1", "b2"],
        attempts=[
            AttemptTrace("b1", 1, AttemptOutcome.FAIL, 120.0, "server_error", "b1 returned error 500"),
            AttemptTrace("b2", 1, AttemptOutcome.SUCCESS, 80.0),
        ],
        total_latency_ms=210.0,
        backend_used="b2",
        token_usage=TokenUsage(prompt_tokens=10, completion_tokens=20),
        cost=0.002,
    )
    fields.update(overrides)
    return build_trace(**fields)


class ListHandler(logging.Handler):
    """Collects log records."""

    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def captured_logs():
    def attach(name):
        handler = ListHandler()
        target = logging.getLogger(name)
        target.addHandler(handler)
        attached.append((target, handler))
        return handler

    attached = []
    yield attach
    for target, handler in attached:
        target.removeHandler(handler)


# ============================================================
# Recorder Tests
# ============================================================

class TestObservabilityRecorder:
    """Fan-out to sinks."""

    def test_build_trace_outcome(self):
        """Outcome is success only with a backend and no error."""
        assert fallback_trace().outcome == "success"
        failed = fallback_trace(backend_used=None, error_kind="all_backends_exhausted")
        assert failed.outcome == "failure"
        assert failed.succeeded is False

    def test_every_sink_receives_the_trace(self):
        first, second = [], []
        recorder = ObservabilityRecorder([first.append, second.append])

        trace = fallback_trace()
        recorder.record(trace)

        assert first == [trace]
        assert second == [trace]

    def test_failing_sink_is_isolated(self):
        """A raising sink neither raises nor stops later sinks."""
        received = []

        def broken(trace):
            raise RuntimeError("sink down")

        recorder = ObservabilityRecorder([broken, received.append])
        recorder.record(fallback_trace())

        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_async_sink(self):
        """Coroutine sinks run as tasks and can be drained."""
        received = []

        async def async_sink(trace):
            received.append(trace.request_id)

        recorder = ObservabilityRecorder([async_sink])
        recorder.record(fallback_trace())
        await recorder.drain()

        assert received == ["req_test"]

    @pytest.mark.asyncio
    async def test_failing_async_sink_is_isolated(self):
        async def broken(trace):
            raise RuntimeError("exporter down")

        recorder = ObservabilityRecorder([broken])
        recorder.record(fallback_trace())
        await recorder.drain()

    def test_async_sink_without_loop_is_dropped(self):
        """Outside an event loop the coroutine is closed, not leaked."""
        async def async_sink(trace):
            raise AssertionError("should not run")

        ObservabilityRecorder([async_sink]).record(fallback_trace())

    def test_count_outcomes(self):
        counts = count_outcomes(fallback_trace().attempts)
        assert counts == {"success": 1, "fail": 1, "timeout": 0, "circuit_open": 0}

    def test_trace_to_dict(self):
        data = fallback_trace().to_dict()
        assert data["outcome"] == "success"
        assert data["token_usage"]["total_tokens"] == 30
        assert [a["outcome"] for a in data["attempts"]] == ["fail", "success"]


class TestSinks:
    """Built-in sinks."""

    def test_metrics_sink(self, metrics_registry):
        """Requests, attempts, fallbacks and tokens are counted."""
        MetricsSink()(fallback_trace())

        sample = metrics_registry.get_sample_value
        assert sample("llmrelay_requests_total", {
            "tier": "medium", "backend": "b2", "outcome": "success", "error_kind": "none",
        }) == 1.0
        assert sample("llmrelay_attempts_total", {
            "backend": "b1", "outcome": "fail", "error_kind": "server_error",
        }) == 1.0
        assert sample("llmrelay_fallbacks_total", {
            "from_backend": "b1", "to_backend": "b2", "reason": "server_error",
        }) == 1.0
        assert sample("llmrelay_tokens_total", {"backend": "b2", "type": "completion"}) == 20.0
        assert sample("llmrelay_cost_total", {"backend": "b2"}) == pytest.approx(0.002)

    def test_metrics_sink_failure(self, metrics_registry):
        """Failed requests count under backend 'none' and the error kind."""
        MetricsSink()(fallback_trace(
            attempts=[AttemptTrace("b1", 1, AttemptOutcome.CIRCUIT_OPEN, error_kind="circuit_open")],
            backend_used=None,
            error_kind="all_backends_exhausted",
        ))

        assert metrics_registry.get_sample_value("llmrelay_requests_total", {
            "tier": "medium", "backend": "none", "outcome": "failure",
            "error_kind": "all_backends_exhausted",
        }) == 1.0
        assert metrics_registry.get_sample_value(
            "llmrelay_tokens_total", {"backend": "b1", "type": "prompt"}
        ) is None

    def test_logging_sink_success(self, captured_logs):
        handler = captured_logs("llmrelay.requests")

        LoggingSink()(fallback_trace())

        record = handler.records[-1]
        assert record.getMessage() == "Request routed"
        assert record.levelno == logging.INFO
        assert record.backend_used == "b2"
        assert record.attempt_outcomes["fail"] == 1
        assert record.total_tokens == 30

    def test_logging_sink_failure(self, captured_logs):
        handler = captured_logs("llmrelay.requests")

        LoggingSink()(fallback_trace(backend_used=None, error_kind="timeout"))

        record = handler.records[-1]
        assert record.levelno == logging.WARNING
        assert record.error_kind == "timeout"


# ============================================================
# Metrics Tests
# ============================================================

class TestMetricsCollector:
    """Direct collector calls."""

    def test_circuit_breaker_state(self, metrics_registry):
        metrics = get_metrics()
        metrics.set_circuit_breaker_state("groq", "half_open")

        assert metrics_registry.get_sample_value(
            "llmrelay_circuit_breaker_state", {"backend": "groq"}
        ) == CIRCUIT_STATE_VALUES["half_open"]

    def test_routing_decision(self, metrics_registry):
        get_metrics().record_routing_decision("high", "gemini", degraded=True)

        assert metrics_registry.get_sample_value("llmrelay_routing_decisions_total", {
            "tier": "high", "selected_backend": "gemini", "degraded": "true",
        }) == 1.0

    def test_active_request_tracker(self, metrics_registry):
        metrics = get_metrics()
        labels = {"endpoint": "/v1/route"}

        with metrics.track_active_request("/v1/route"):
            assert metrics_registry.get_sample_value("llmrelay_active_requests", labels) == 1.0

        assert metrics_registry.get_sample_value("llmrelay_active_requests", labels) == 0.0

    def test_zero_cost_is_not_recorded(self, metrics_registry):
        get_metrics().record_cost("stub", 0.0)
        assert metrics_registry.get_sample_value("llmrelay_cost_total", {"backend": "stub"}) is None


# ============================================================
# Tracing Tests
# ============================================================

class TestTracingManager:
    """Tests for TracingManager."""

    @pytest.fixture
    def tracing(self):
        return TracingManager(service_name="test-service", console_export=False)

    def test_span_creation(self, tracing):
        """Spans carry W3C sized identifiers."""
        with tracing.start_span("test-operation") as span:
            span.set_attribute("test.key", "test-value")
            ctx = TraceContext.from_span(span)

            assert len(ctx.trace_id) == 32
            assert len(ctx.span_id) == 16

    def test_traceparent_generation(self, tracing):
        with tracing.start_span("test") as span:
            parts = TraceContext.from_span(span).to_traceparent().split("-")

        assert len(parts) == 4
        assert parts[0] == "00"
        assert len(parts[1]) == 32
        assert len(parts[2]) == 16
        assert len(parts[3]) == 2

    def test_server_span_continues_incoming_trace(self, tracing):
        """A traceparent header becomes the parent of the server span."""
        headers = {"traceparent": "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"}

        with tracing.start_server_span("GET /test", headers) as span:
            assert TraceContext.from_span(span).trace_id == "0af7651916cd43dd8448eb211c80319c"

    def test_current_trace_context(self, tracing):
        with tracing.start_span("outer"):
            assert tracing.get_current_trace_context() is not None

    @pytest.mark.asyncio
    async def test_backend_calls_are_spanned(self):
        """adapter.invoke produces a client span named after the backend."""
        from conftest import make_stub
        from llmrelay.core.models import RequestContext

        exporter = InMemorySpanExporter()
        get_tracing_manager().provider.add_span_processor(SimpleSpanProcessor(exporter))

        await make_stub("groq").invoke(RequestContext.create(prompt="hello"))

        spans = [s for s in exporter.get_finished_spans() if s.name == "groq.generate"]
        assert len(spans) == 1
        assert spans[0].attributes["llm.backend"] == "groq"
        assert spans[0].attributes["llm.tokens.prompt"] >= 1

    @pytest.mark.asyncio
    async def test_failed_backend_call_tags_error_kind(self):
        from conftest import make_stub
        from llmrelay.core.errors import RateLimitedError
        from llmrelay.core.models import RequestContext

        exporter = InMemorySpanExporter()
        get_tracing_manager().provider.add_span_processor(SimpleSpanProcessor(exporter))

        with pytest.raises(RateLimitedError):
            await make_stub("cerebras", script=[RateLimitedError("cerebras")]).invoke(
                RequestContext.create(prompt="hello")
            )

        span = next(s for s in exporter.get_finished_spans() if s.name == "cerebras.generate")
        assert span.attributes["llmrelay.error_kind"] == "rate_limited"
        assert span.attributes["llmrelay.retryable"] is True
        assert not span.status.is_ok


# ============================================================
# Logging Tests
# ============================================================

class TestStructuredLogging:
    """Tests for structured logging."""

    def make_record(self, **fields):
        record = logging.LogRecord(
            name="test",
            level=logging.INFO,
            pathname="test.py",
            lineno=10,
            msg="Test message",
            args=(),
            exc_info=None,
        )
        for key, value in fields.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        data = json.loads(JSONFormatter().format(self.make_record(backend="groq")))

        assert data["level"] == "INFO"
        assert data["message"] == "Test message"
        assert data["backend"] == "groq"
        assert "timestamp" in data

    def test_log_context_injection(self):
        """The current LogContext is merged into every line."""
        LogContext.set_current(LogContext(request_id="req_123", tier="high"))

        data = json.loads(JSONFormatter().format(self.make_record()))

        assert data["request_id"] == "req_123"
        assert data["tier"] == "high"

    def test_sensitive_field_redaction(self):
        record = self.make_record(api_key="gsk_live", authorization="Bearer x", total_tokens=42)

        data = json.loads(JSONFormatter(redact_sensitive=True).format(record))

        assert data["api_key"] == "[REDACTED]"
        assert data["authorization"] == "[REDACTED]"
        assert data["total_tokens"] == 42

    def test_structured_fields_become_record_attributes(self, captured_logs):
        handler = captured_logs("llmrelay.test")

        get_logger("llmrelay.test").warning("Circuit opened", backend="groq", failures=5)

        record = handler.records[-1]
        assert record.backend == "groq"
        assert record.failures == 5

    def test_timed_operation(self):
        with TimedOperation("probe_round", get_logger("test")) as timer:
            time.sleep(0.02)

        assert timer.duration_ms is not None
        assert timer.duration_ms >= 15

    def test_registered_secret_is_masked(self):
        """A registered key never appears, even inside free text."""
        register_secret("gsk-unit-secret-value")
        record = self.make_record(detail="401 for key gsk-unit-secret-value")
        record.msg = "Auth failed with gsk-unit-secret-value"

        line = JSONFormatter().format(record)

        assert "gsk-unit-secret-value" not in line
        assert json.loads(line)["message"] == "Auth failed with [REDACTED]"

    def test_short_values_are_not_registered(self):
        register_secret("abc")
        data = json.loads(JSONFormatter().format(self.make_record(backend="abc")))
        assert data["backend"] == "abc"

    def test_scope_restores_enclosing_context(self):
        with LogContext.scope(request_id="req_outer", tier="low"):
            with LogContext.scope(backend="groq") as inner:
                assert inner.request_id == "req_outer"
                assert inner.backend == "groq"
            assert LogContext.get_current().backend == ""
            assert LogContext.get_current().request_id == "req_outer"

        assert LogContext.get_current() is None

    def test_key_value_formatter(self):
        with LogContext.scope(request_id="req_kv"):
            line = KeyValueFormatter().format(self.make_record(backend="groq", attempt=2))

        assert " INFO test Test message " in line
        assert "request_id=req_kv" in line
        assert "backend=groq attempt=2" in line


# ============================================================
# Middleware Tests
# ============================================================

class TestObservabilityMiddleware:
    """Tests for ObservabilityMiddleware."""

    @pytest.fixture
    def client(self):
        app = FastAPI()
        app.add_middleware(ObservabilityMiddleware)

        @app.get("/test")
        async def test_endpoint():
            return JSONResponse({"status": "ok"}, headers={"X-Backend": "groq"})

        @app.get("/health")
        async def health():
            return {"status": "healthy"}

        return TestClient(app)

    def test_request_id_generation(self, client):
        response = client.get("/test")

        assert response.status_code == 200
        assert response.headers["x-request-id"].startswith("req_")

    def test_trace_id_generation(self, client):
        response = client.get("/test")
        assert len(response.headers["x-trace-id"]) == 32

    def test_request_id_passthrough(self, client):
        response = client.get("/test", headers={"x-request-id": "req_custom123"})
        assert response.headers["x-request-id"] == "req_custom123"

    def test_malformed_request_id_is_replaced(self, client):
        response = client.get("/test", headers={"x-request-id": "bad id with spaces"})

        assert response.headers["x-request-id"].startswith("req_")

    @pytest.mark.parametrize("incoming,kept", [
        ("req_abc", True),
        ("3f2a-11e9.b:7", True),
        ("x" * 129, False),
        ("", False),
        (None, False),
    ])
    def test_resolve_request_id(self, incoming, kept):
        assert (resolve_request_id(incoming) == incoming) is kept

    def test_traceparent_extraction(self, client):
        """The incoming trace id is kept."""
        traceparent = "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01"

        response = client.get("/test", headers={"traceparent": traceparent})

        assert response.headers["x-trace-id"] == "0af7651916cd43dd8448eb211c80319c"

    def test_excluded_paths(self, client):
        """Health checks skip request tracking."""
        response = client.get("/health")

        assert response.status_code == 200
        assert "x-trace-id" not in response.headers


class TestObservabilityIntegration:

    def test_setup_observability(self):
        result = setup_observability(service_name="test", service_version="1.0.0")

        assert result["logging"] is True
        assert "metrics" in result
        assert "tracing" in result
