"""
llmrelay - API Dependencies

Shared dependencies for FastAPI routes.
"""

from typing import Callable, Optional

from fastapi import Request

from ..core.errors import AllBackendsExhaustedError
from ..service import RelayService


# Set by server.py during startup to avoid circular imports
_service_getter: Optional[Callable[[], Optional[RelayService]]] = None


def set_service_getter(getter: Callable[[], Optional[RelayService]]) -> None:
    """Set the function that returns the service instance."""
    global _service_getter
    _service_getter = getter


def get_service() -> RelayService:
    """
    FastAPI dependency returning the running RelayService.

    Raises:
        AllBackendsExhaustedError: the server has not finished starting
    """
    service = _service_getter() if _service_getter is not None else None
    if service is None:
        raise AllBackendsExhaustedError(message="Relay service not initialized. Server may be starting up.")
    return service


def get_request_id(request: Request) -> str:
    """Request id assigned by ObservabilityMiddleware, empty when it did not run."""
    return getattr(request.state, "request_id", "")
