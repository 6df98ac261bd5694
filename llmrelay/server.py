"""
llmrelay - API Server

FastAPI application exposing the relay over HTTP.

Endpoints:
- POST /v1/route: route one request with retry, circuit breaking and fallback
- GET /v1/backends/health: per-backend health and circuit state
- GET /health, /ready: liveness and readiness
- GET /metrics: Prometheus metrics

Configuration comes from environment variables (see llmrelay.core.config).
Set RELAY_USE_STUB_ADAPTERS=true to run without any backend credentials.
"""

import os
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import __version__
from .api import relay_router, set_service_getter
from .core.config import TRUTHY
from .core.errors import RelayError
from .observability import (
    ObservabilityMiddleware,
    get_logger,
    metrics_endpoint,
    setup_observability,
)
from .service import RelayService


# ============================================================
# Global state
# ============================================================

service_instance: Optional[RelayService] = None


def get_service_instance() -> Optional[RelayService]:
    return service_instance


set_service_getter(get_service_instance)


# ============================================================
# Lifespan management
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the relay service on startup, close it on shutdown."""
    global service_instance

    # Observability first, for logging during startup
    observability = setup_observability(
        service_name="llmrelay",
        service_version=__version__,
        otlp_endpoint=os.getenv("OTEL_EXPORTER_OTLP_ENDPOINT"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
    logger = get_logger("llmrelay.server")

    service_instance = RelayService.from_env()
    if not service_instance.adapters:
        logger.warning("No backends configured. Set RELAY_BACKENDS and <NAME>_API_KEY")

    probe = os.getenv("RELAY_HEALTH_PROBING", "true").strip().lower() in TRUTHY
    await service_instance.start(probe=probe)

    logger.info(
        "llmrelay server ready",
        backends=sorted(service_instance.adapters),
        stub_adapters=service_instance.config.use_stub_adapters,
    )

    yield

    await service_instance.close()
    service_instance = None

    if "tracing" in observability:
        observability["tracing"].shutdown()

    logger.info("llmrelay server stopped")


# ============================================================
# FastAPI App
# ============================================================

app = FastAPI(
    title="llmrelay",
    description="Multi-backend LLM request routing with retry, circuit breaking and fallback",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

# First added = outermost
app.add_middleware(ObservabilityMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(relay_router)


# ============================================================
# Core Endpoints
# ============================================================

@app.get("/health")
async def health_check():
    """Liveness plus a per-backend summary."""
    service = get_service_instance()
    statuses = service.health_status() if service else []
    all_available = bool(statuses) and all(s["availability"] for s in statuses)

    return {
        "status": "healthy" if all_available else "degraded",
        "version": __version__,
        "backends": {
            s["name"]: {
                "availability": s["availability"],
                "circuit_state": s["circuit_state"],
                "latency_p50_ms": s["latency_p50_ms"],
            }
            for s in statuses
        },
    }


@app.get("/metrics")
async def prometheus_metrics():
    """Prometheus metrics in text exposition format."""
    return metrics_endpoint()


@app.get("/ready")
async def readiness_check():
    """
    Readiness check.

    Ready when at least one backend is available with its circuit not open.
    """
    service = get_service_instance()
    if service is None or not service.is_ready():
        return JSONResponse(
            status_code=503,
            content={
                "status": "not_ready",
                "reason": "No available backends",
            },
        )
    return {"status": "ready"}


# ============================================================
# Error handlers
# ============================================================

@app.exception_handler(RelayError)
async def relay_exception_handler(request: Request, exc: RelayError):
    """Failure shape of the route operation."""
    request_id = exc.error.request_id or getattr(request.state, "request_id", "")
    headers = {
        "X-Error-Kind": exc.kind.value,
        "X-Error-Code": exc.error.code,
    }
    if request_id:
        headers["X-Request-Id"] = request_id
    if exc.error.retry_after:
        headers["Retry-After"] = str(exc.error.retry_after)
    if exc.backend:
        headers["X-Backend"] = exc.backend

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response(),
        headers=headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request body failed validation."""
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return JSONResponse(
        status_code=400,
        content={
            "error_kind": "invalid_request",
            "message": message,
            "attempts": [],
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    request_id = getattr(request.state, "request_id", "") or f"req_{uuid.uuid4().hex[:24]}"
    get_logger("llmrelay.server").exception(
        "Unhandled error",
        request_id=request_id,
        error_type=type(exc).__name__,
    )
    return JSONResponse(
        status_code=500,
        content={
            "error_kind": "server_error",
            "message": "An unexpected error occurred",
            "attempts": [],
        },
        headers={"X-Request-Id": request_id},
    )


# ============================================================
# Run server
# ============================================================

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "llmrelay.server:app",
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
