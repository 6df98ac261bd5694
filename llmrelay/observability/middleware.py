"""
llmrelay - Observability Middleware

HTTP middleware for the relay API plus the one-call observability setup used
at startup.

For every tracked request the middleware:
- assigns the request id (a well-formed incoming X-Request-Id is kept)
- opens a server span, continuing an incoming W3C traceparent
- binds request_id/trace_id/endpoint into the LogContext
- tags the span with the X-Backend / X-Error-Kind set by the route handlers
- writes one completion line at a level matching the status code

Usage:
    from llmrelay.observability import setup_observability, ObservabilityMiddleware

    setup_observability(service_name="llmrelay")
    app.add_middleware(ObservabilityMiddleware)
"""

import logging
import os
import re
import time
import uuid
from typing import Any, Dict, Iterable, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.types import ASGIApp
from opentelemetry.trace import Span, Status, StatusCode

from .logging import LogContext, get_logger, setup_logging
from .metrics import get_metrics, setup_metrics
from .tracing import TraceContext, get_tracing_manager, setup_tracing


# Client-supplied ids end up in logs and headers
_REQUEST_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.:-]{1,128}$")


def new_request_id() -> str:
    return f"req_{uuid.uuid4().hex[:24]}"


def resolve_request_id(incoming: Optional[str]) -> str:
    """Keep a well-formed client id, otherwise mint one."""
    if incoming and _REQUEST_ID_PATTERN.match(incoming):
        return incoming
    return new_request_id()


def _completion_level(status_code: int) -> int:
    if status_code >= 500:
        return logging.ERROR
    if status_code >= 400:
        return logging.WARNING
    return logging.INFO


class ObservabilityMiddleware(BaseHTTPMiddleware):
    """Request id, server span, log context and completion log for each request."""

    # Probes and docs are not tracked
    EXCLUDE_PATHS = frozenset({"/health", "/ready", "/metrics", "/openapi.json", "/docs", "/redoc"})

    def __init__(self, app: ASGIApp, exclude_paths: Optional[Iterable[str]] = None):
        super().__init__(app)
        self.exclude_paths = frozenset(exclude_paths) if exclude_paths is not None else self.EXCLUDE_PATHS
        self.logger = get_logger("llmrelay.http")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        if path in self.exclude_paths:
            return await call_next(request)

        headers = dict(request.headers)
        request_id = resolve_request_id(headers.get("x-request-id"))
        start_time = time.perf_counter()

        with get_tracing_manager().start_server_span(
            name=f"{request.method} {path}",
            headers=headers,
            attributes={
                "http.method": request.method,
                "http.route": path,
                "llmrelay.request_id": request_id,
            },
        ) as span:
            trace_ctx = TraceContext.from_span(span)
            request.state.request_id = request_id
            request.state.trace_id = trace_ctx.trace_id

            with LogContext.scope(
                request_id=request_id,
                trace_id=trace_ctx.trace_id,
                span_id=trace_ctx.span_id,
                endpoint=path,
            ):
                try:
                    with get_metrics().track_active_request(path):
                        response = await call_next(request)
                except Exception as e:
                    span.record_exception(e)
                    span.set_status(Status(StatusCode.ERROR, str(e)))
                    self.logger.exception(
                        "Request failed with exception",
                        method=request.method,
                        path=path,
                        error_type=type(e).__name__,
                        duration_ms=self._elapsed_ms(start_time),
                    )
                    raise

                self._annotate(span, response)
                self.logger.log(
                    _completion_level(response.status_code),
                    "Request completed",
                    method=request.method,
                    path=path,
                    status_code=response.status_code,
                    duration_ms=self._elapsed_ms(start_time),
                    backend=response.headers.get("x-backend"),
                    error_kind=response.headers.get("x-error-kind"),
                )

        response.headers["X-Request-Id"] = request_id
        response.headers["X-Trace-Id"] = trace_ctx.trace_id
        return response

    @staticmethod
    def _annotate(span: Span, response: Response) -> None:
        span.set_attribute("http.status_code", response.status_code)
        for header, attribute in (("x-backend", "llmrelay.backend"), ("x-error-kind", "llmrelay.error_kind")):
            value = response.headers.get(header)
            if value:
                span.set_attribute(attribute, value)

        if response.status_code >= 500:
            span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
        else:
            span.set_status(Status(StatusCode.OK))

    @staticmethod
    def _elapsed_ms(start_time: float) -> float:
        return round((time.perf_counter() - start_time) * 1000, 2)


_observability_initialized = False


def setup_observability(
    service_name: str = "llmrelay",
    service_version: str = "0.1.0",
    otlp_endpoint: Optional[str] = None,
    log_level: str = "INFO",
    metrics_enabled: bool = True,
    tracing_enabled: bool = True,
) -> Dict[str, Any]:
    """
    Configure logging, metrics and tracing for the process.

    Repeated calls reconfigure in place; the startup line is logged once.

    Returns:
        {"logging": True, "metrics": MetricsCollector, "tracing": TracingManager},
        without the keys of disabled components
    """
    global _observability_initialized

    otlp_endpoint = otlp_endpoint or os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT")

    setup_logging(
        level=os.getenv("LOG_LEVEL", log_level),
        json_output=os.getenv("LOG_FORMAT", "json").lower() == "json",
    )
    result: Dict[str, Any] = {"logging": True}

    if metrics_enabled:
        result["metrics"] = setup_metrics()

    if tracing_enabled:
        result["tracing"] = setup_tracing(
            service_name=service_name,
            service_version=service_version,
            otlp_endpoint=otlp_endpoint,
        )

    if not _observability_initialized:
        get_logger("llmrelay.observability").info(
            "Observability initialized",
            service_name=service_name,
            service_version=service_version,
            metrics_enabled=metrics_enabled,
            tracing_enabled=tracing_enabled,
            otlp_endpoint=otlp_endpoint or "none",
        )
        _observability_initialized = True

    return result
