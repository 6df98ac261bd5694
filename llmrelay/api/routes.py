"""
llmrelay - Routing API

POST /v1/route             route one request across the configured backends
GET  /v1/backends/health   per-backend health and circuit state
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from ..core.models import Message, RequestContext
from ..service import RelayService
from .dependencies import get_request_id, get_service
from .models import BackendHealthResponse, RouteErrorResponse, RouteRequest, RouteResponse


router = APIRouter(prefix="/v1", tags=["routing"])


def to_context(body: RouteRequest, request_id: str = "") -> RequestContext:
    """Convert the API request to a RequestContext."""
    messages = [Message(role=m.role.value, content=m.content) for m in body.messages or []]
    return RequestContext.create(
        prompt=body.prompt,
        messages=messages,
        max_output_tokens=body.max_output_tokens,
        response_format=body.response_format,
        complexity_hint=body.complexity_hint.value if body.complexity_hint else None,
        model_hint=body.model_hint,
        deadline_ms=body.deadline_ms,
        request_id=request_id or None,
        metadata=body.metadata,
    )


@router.post(
    "/route",
    response_model=RouteResponse,
    responses={
        400: {"model": RouteErrorResponse},
        503: {"model": RouteErrorResponse},
        504: {"model": RouteErrorResponse},
    },
)
async def route_request(
    body: RouteRequest,
    service: RelayService = Depends(get_service),
    request_id: str = Depends(get_request_id),
):
    """
    Route one generation request.

    Returns the success shape with a 200, or the failure shape
    ({error_kind, message, attempts}) with the error's status code.
    """
    ctx = to_context(body, request_id)

    result = await service.route(ctx)

    return JSONResponse(
        content=result.to_dict(),
        headers={
            "X-Request-Id": ctx.request_id,
            "X-Backend": result.backend_used,
        },
    )


@router.get("/backends/health", response_model=BackendHealthResponse)
async def backends_health(service: RelayService = Depends(get_service)):
    """Current health of every configured backend."""
    return BackendHealthResponse.from_statuses(service.health_status())
