"""
llmrelay - API Request/Response Models

Pydantic models for validating and serialising the HTTP surface.
"""

from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


# ============================================================
# Enums
# ============================================================

class RoleEnum(str, Enum):
    """Message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TierEnum(str, Enum):
    """Complexity tiers."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ============================================================
# Route Request
# ============================================================

class MessageInput(BaseModel):
    """Input message."""
    role: RoleEnum
    content: str = Field(..., min_length=1)


class RouteRequest(BaseModel):
    """
    Request to route one generation.

    Exactly one of `prompt` or `messages` is usually given; when both are
    present the prompt is appended as a final user message.
    """
    prompt: Optional[str] = Field(default=None, description="Plain user prompt")
    messages: Optional[List[MessageInput]] = Field(default=None, description="Chat messages")
    complexity_hint: Optional[TierEnum] = Field(
        default=None,
        description="Skip classification and use this tier",
    )
    model_hint: Optional[str] = Field(
        default=None,
        description="Preferred backend name or model id, e.g. 'groq' or 'gemini/gemini-1.5-flash'",
    )
    max_output_tokens: int = Field(default=1024, ge=1, le=128000)
    response_format: Literal["text", "structured"] = "text"
    deadline_ms: Optional[int] = Field(
        default=None,
        ge=1,
        le=600000,
        description="Overall time budget; the server default applies when omitted",
    )
    metadata: Optional[Dict[str, str]] = None

    @model_validator(mode="after")
    def validate_input(self):
        if not self.prompt and not self.messages:
            raise ValueError("Either prompt or messages is required")
        return self


# ============================================================
# Route Response
# ============================================================

class UsageInfo(BaseModel):
    """Token usage information."""
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int


class GenerationOutput(BaseModel):
    """Normalised backend output."""
    content: str
    backend: str
    model: str
    usage: UsageInfo
    cost: float
    finish_reason: str
    id: Optional[str] = None


class AttemptInfo(BaseModel):
    """One attempt against one backend."""
    backend: str
    attempt: int
    outcome: Literal["success", "fail", "circuit_open", "timeout"]
    latency_ms: float
    error_kind: Optional[str] = None
    error_message: Optional[str] = None


class RouteResponse(BaseModel):
    """Successful routing result."""
    result: GenerationOutput
    backend_used: str
    complexity_tier: TierEnum
    attempts: List[AttemptInfo]
    total_latency_ms: float
    token_usage: UsageInfo


class RouteErrorResponse(BaseModel):
    """Failed routing result."""
    error_kind: str
    message: str
    attempts: List[AttemptInfo] = Field(default_factory=list)


# ============================================================
# Health
# ============================================================

class BackendHealth(BaseModel):
    """Health of one backend."""
    name: str
    model: str
    circuit_state: Literal["closed", "open", "half_open"]
    availability: bool
    error_rate_short: float
    error_rate_long: float
    latency_p50_ms: float
    latency_p95_ms: float
    quota_used: int
    quota_limit: Optional[int] = None
    last_checked: Optional[float] = None
    last_error: Optional[str] = None


class BackendHealthResponse(BaseModel):
    """Health of every configured backend."""
    object: Literal["list"] = "list"
    data: List[BackendHealth]

    @classmethod
    def from_statuses(cls, statuses: List[Dict[str, Any]]) -> "BackendHealthResponse":
        return cls(data=[BackendHealth(**s) for s in statuses])
