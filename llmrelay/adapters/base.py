"""
llmrelay - Backend Adapter Base

Abstract base class for backend adapters.
Each backend variant (Groq, Cerebras, OpenAI, Gemini, stub) implements this
interface.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from ..core.errors import RelayError, normalize_error
from ..core.models import (
    BackendDescriptor,
    ComplexityTier,
    GenerationResult,
    RequestContext,
    TokenUsage,
)
from ..observability.logging import register_secret
from ..observability.tracing import record_generation, trace_backend_call

if TYPE_CHECKING:
    from ..routing.health import HealthStatus


@dataclass
class AdapterConfig:
    """Connection settings for a backend adapter."""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    timeout: float = 30.0


class BaseAdapter(ABC):
    """
    Abstract base class for backend adapters.

    Each adapter must implement:
    - _generate: perform the remote call and return a normalised result
    - _normalize_error: map any transport or HTTP failure into the relay taxonomy
    - probe: lightweight liveness check

    The adapter is responsible for:
    1. Converting the request context into the backend's wire format
    2. Making exactly one call per invoke() (no internal retries)
    3. Converting the backend response into a GenerationResult
    4. Normalising backend-specific errors once
    """

    def __init__(self, descriptor: BackendDescriptor, config: Optional[AdapterConfig] = None):
        self.descriptor = descriptor
        self.config = config or AdapterConfig()
        register_secret(self.config.api_key)

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def model(self) -> str:
        return self.descriptor.model

    def is_available(self) -> bool:
        """Credentials present and adapter usable."""
        return bool(self.config.api_key)

    def has_capacity(
        self,
        tier: ComplexityTier,
        health: Optional["HealthStatus"] = None,
    ) -> bool:
        """Tier supported and quota headroom left."""
        if not self.descriptor.supports(tier):
            return False
        if health is not None and health.quota_exhausted:
            return False
        return True

    async def invoke(self, ctx: RequestContext) -> GenerationResult:
        """
        Perform one remote call.

        Raises:
            RelayError: normalised failure (never a raw transport exception)
        """
        with trace_backend_call(self.name, self.model) as span:
            try:
                result = await self._generate(ctx)
            except RelayError:
                raise
            except Exception as e:
                raise self._normalize_error(e, ctx.request_id) from e

            record_generation(span, result)
            return result

    @abstractmethod
    async def _generate(self, ctx: RequestContext) -> GenerationResult:
        pass

    @abstractmethod
    async def probe(self) -> bool:
        """
        Check whether the backend is reachable.

        Returns:
            True if the backend answered successfully
        """
        pass

    def _normalize_error(self, error: Exception, request_id: str = "") -> RelayError:
        return normalize_error(error, self.name, request_id)

    async def close(self):
        return

    # ============================================================
    # Helper methods for subclasses
    # ============================================================

    def calculate_cost(self, usage: TokenUsage) -> float:
        """Cost of a call, from the descriptor's per-1K-token factor."""
        return usage.total_tokens / 1000.0 * self.descriptor.cost_factor

    def _convert_messages(self, ctx: RequestContext) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in ctx.messages]

    def _build_result(
        self,
        content: str,
        usage: TokenUsage,
        model: Optional[str] = None,
        finish_reason: str = "stop",
        raw_id: Optional[str] = None,
    ) -> GenerationResult:
        return GenerationResult(
            content=content,
            backend=self.name,
            model=model or self.model,
            usage=usage,
            cost=self.calculate_cost(usage),
            finish_reason=finish_reason,
            raw_id=raw_id,
        )
