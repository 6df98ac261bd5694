"""
llmrelay - Core Data Models

Shared data model for the routing engine: backend descriptors, request
context, normalised generation results and per-attempt traces.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Union


# ============================================================
# Enums
# ============================================================

class ComplexityTier(str, Enum):
    """Estimated request complexity, ordered low < medium < high."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def lower(self) -> Optional["ComplexityTier"]:
        """Next-lower tier, or None for LOW."""
        idx = self.rank
        if idx == 0:
            return None
        return _TIER_ORDER[idx - 1]

    @classmethod
    def parse(cls, value: Union[str, "ComplexityTier", None]) -> Optional["ComplexityTier"]:
        if value is None or value == "":
            return None
        if isinstance(value, ComplexityTier):
            return value
        return cls(str(value).strip().lower())


_TIER_ORDER = [ComplexityTier.LOW, ComplexityTier.MEDIUM, ComplexityTier.HIGH]

ALL_TIERS: FrozenSet[ComplexityTier] = frozenset(_TIER_ORDER)


class ResponseFormat(str, Enum):
    """Requested output format."""
    TEXT = "text"
    STRUCTURED = "structured"


class Role(str, Enum):
    """Message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class AttemptOutcome(str, Enum):
    """Outcome of a single attempt against one backend."""
    SUCCESS = "success"
    FAIL = "fail"
    CIRCUIT_OPEN = "circuit_open"
    TIMEOUT = "timeout"


# ============================================================
# Backends
# ============================================================

@dataclass(frozen=True)
class BackendDescriptor:
    """Static description of one configured backend."""
    name: str
    kind: str
    model: str
    priority_weight: float = 1.0
    supported_tiers: FrozenSet[ComplexityTier] = ALL_TIERS

    # Quota limits (None = unlimited)
    requests_per_minute: Optional[int] = None
    requests_per_day: Optional[int] = None

    # USD per 1K tokens
    cost_factor: float = 0.0

    def supports(self, tier: ComplexityTier) -> bool:
        return tier in self.supported_tiers

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "model": self.model,
            "priority_weight": self.priority_weight,
            "supported_tiers": sorted(t.value for t in self.supported_tiers),
            "requests_per_minute": self.requests_per_minute,
            "requests_per_day": self.requests_per_day,
            "cost_factor": self.cost_factor,
        }


# ============================================================
# Requests
# ============================================================

@dataclass
class Message:
    """A single chat message."""
    role: Role
    content: str

    def __post_init__(self):
        if not isinstance(self.role, Role):
            self.role = Role(self.role)

    @classmethod
    def system(cls, content: str) -> Message:
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> Message:
        return cls(role=Role.USER, content=content)

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


@dataclass
class RequestContext:
    """
    Everything the engine needs to serve one request.

    `deadline` is an absolute time.monotonic() value. A context is owned by
    a single call and is never shared across requests.
    """
    request_id: str
    messages: List[Message]
    max_output_tokens: int = 1024
    response_format: ResponseFormat = ResponseFormat.TEXT
    complexity_hint: Optional[ComplexityTier] = None
    model_hint: Optional[str] = None
    deadline: Optional[float] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def create(
        cls,
        prompt: Optional[str] = None,
        messages: Optional[Iterable[Union[Message, Dict[str, str]]]] = None,
        max_output_tokens: int = 1024,
        response_format: Union[str, ResponseFormat] = ResponseFormat.TEXT,
        complexity_hint: Union[str, ComplexityTier, None] = None,
        model_hint: Optional[str] = None,
        deadline_ms: Optional[float] = None,
        request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[float] = None,
    ) -> RequestContext:
        """Build a context from a bare prompt or a list of messages."""
        msgs: List[Message] = []
        for m in messages or []:
            if isinstance(m, Message):
                msgs.append(m)
            else:
                msgs.append(Message(role=Role(m["role"]), content=m["content"]))
        if prompt:
            msgs.append(Message.user(prompt))
        if not msgs:
            raise ValueError("Either prompt or messages is required")

        deadline = None
        if deadline_ms is not None:
            start = time.monotonic() if now is None else now
            deadline = start + deadline_ms / 1000.0

        return cls(
            request_id=request_id or f"req_{uuid.uuid4().hex[:24]}",
            messages=msgs,
            max_output_tokens=max_output_tokens,
            response_format=ResponseFormat(response_format),
            complexity_hint=ComplexityTier.parse(complexity_hint),
            model_hint=model_hint or None,
            deadline=deadline,
            metadata=dict(metadata or {}),
        )

    @property
    def prompt_text(self) -> str:
        """All message content joined, used for classification."""
        return "\n".join(m.content for m in self.messages)

    @property
    def wants_structured(self) -> bool:
        return self.response_format == ResponseFormat.STRUCTURED

    def remaining_seconds(self, now: Optional[float] = None) -> Optional[float]:
        if self.deadline is None:
            return None
        now = time.monotonic() if now is None else now
        return max(0.0, self.deadline - now)

    def is_expired(self, now: Optional[float] = None) -> bool:
        remaining = self.remaining_seconds(now)
        return remaining is not None and remaining <= 0.0


# ============================================================
# Results
# ============================================================

@dataclass
class TokenUsage:
    """Token usage information."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def __post_init__(self):
        if self.total_tokens == 0:
            self.total_tokens = self.prompt_tokens + self.completion_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class GenerationResult:
    """Normalised output of one backend invocation."""
    content: str
    backend: str
    model: str
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    finish_reason: str = "stop"
    raw_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "content": self.content,
            "backend": self.backend,
            "model": self.model,
            "usage": self.usage.to_dict(),
            "cost": round(self.cost, 8),
            "finish_reason": self.finish_reason,
        }
        if self.raw_id:
            result["id"] = self.raw_id
        return result


@dataclass
class AttemptTrace:
    """Record of one invocation (or circuit rejection) of a backend."""
    backend: str
    attempt: int
    outcome: AttemptOutcome
    latency_ms: float = 0.0
    error_kind: Optional[str] = None
    error_message: Optional[str] = None
    started_at: float = field(default_factory=time.time)

    @property
    def contacted_backend(self) -> bool:
        """False for circuit-open rejections, which never reach the adapter."""
        return self.outcome != AttemptOutcome.CIRCUIT_OPEN

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "backend": self.backend,
            "attempt": self.attempt,
            "outcome": self.outcome.value,
            "latency_ms": round(self.latency_ms, 2),
        }
        if self.error_kind:
            result["error_kind"] = self.error_kind
        if self.error_message:
            result["error_message"] = self.error_message
        return result


@dataclass
class RoutingDecision:
    """Ordered fallback chain produced by the routing engine."""
    chain: List[str]
    tier: ComplexityTier
    requested_tier: ComplexityTier
    scores: Dict[str, float] = field(default_factory=dict)
    reasoning: str = ""

    @property
    def degraded(self) -> bool:
        return self.tier != self.requested_tier

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chain": list(self.chain),
            "tier": self.tier.value,
            "requested_tier": self.requested_tier.value,
            "degraded": self.degraded,
            "scores": {k: round(v, 4) for k, v in self.scores.items()},
            "reasoning": self.reasoning,
        }


@dataclass
class RouteResult:
    """Successful outcome of a routed request."""
    result: GenerationResult
    backend_used: str
    complexity_tier: ComplexityTier
    attempts: List[AttemptTrace] = field(default_factory=list)
    total_latency_ms: float = 0.0

    @property
    def token_usage(self) -> TokenUsage:
        return self.result.usage

    def to_dict(self) -> Dict[str, Any]:
        return {
            "result": self.result.to_dict(),
            "backend_used": self.backend_used,
            "complexity_tier": self.complexity_tier.value,
            "attempts": [a.to_dict() for a in self.attempts],
            "total_latency_ms": round(self.total_latency_ms, 2),
            "token_usage": self.token_usage.to_dict(),
        }
