"""
llmrelay - API Layer

HTTP surface of the relay: request/response models and the /v1 routes.
"""

from .routes import router as relay_router
from .models import (
    RouteRequest,
    RouteResponse,
    RouteErrorResponse,
    MessageInput,
    AttemptInfo,
    UsageInfo,
    BackendHealth,
    BackendHealthResponse,
)
from .dependencies import get_service, set_service_getter


__all__ = [
    "relay_router",
    # Models
    "RouteRequest",
    "RouteResponse",
    "RouteErrorResponse",
    "MessageInput",
    "AttemptInfo",
    "UsageInfo",
    "BackendHealth",
    "BackendHealthResponse",
    # Dependencies
    "get_service",
    "set_service_getter",
]
