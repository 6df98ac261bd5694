"""
llmrelay - OpenAI-Compatible Backend Adapters

Adapters for backends that speak the OpenAI chat completions protocol:
- Groq (llama-3.1-70b-versatile and friends)
- Cerebras (llama3.1-70b)
- OpenAI itself
"""

from typing import Any, Dict, Optional

import httpx

from .base import AdapterConfig, BaseAdapter
from ..core.errors import RelayError, ServerError, handle_openai_compatible_error
from ..core.models import BackendDescriptor, GenerationResult, RequestContext, TokenUsage


class OpenAICompatibleAdapter(BaseAdapter):
    """
    Adapter for any OpenAI-compatible `/chat/completions` endpoint.

    Supports:
    - Chat completions with system/user/assistant messages
    - JSON mode for structured output
    - Model listing as the liveness probe
    """

    DEFAULT_BASE_URL = "https://api.openai.com/v1"

    def __init__(
        self,
        descriptor: BackendDescriptor,
        config: Optional[AdapterConfig] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(descriptor, config)
        self.base_url = self.config.base_url or self.DEFAULT_BASE_URL
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.config.api_key or ''}",
                "Content-Type": "application/json",
            },
            timeout=self.config.timeout,
            transport=transport,
        )

    async def _generate(self, ctx: RequestContext) -> GenerationResult:
        payload = self._build_chat_payload(ctx)

        response = await self.client.post("/chat/completions", json=payload)
        response.raise_for_status()
        data = response.json()

        return self._parse_chat_response(data)

    async def probe(self) -> bool:
        """Check the backend by listing models."""
        try:
            response = await self.client.get("/models")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def _normalize_error(self, error: Exception, request_id: str = "") -> RelayError:
        return handle_openai_compatible_error(error, self.name, request_id)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _build_chat_payload(self, ctx: RequestContext) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.model,
            "messages": self._convert_messages(ctx),
            "max_tokens": ctx.max_output_tokens,
        }

        if ctx.wants_structured:
            payload["response_format"] = {"type": "json_object"}

        return payload

    def _parse_chat_response(self, data: Dict[str, Any]) -> GenerationResult:
        try:
            choice = data["choices"][0]
            content = choice["message"].get("content") or ""
        except (KeyError, IndexError, TypeError) as e:
            raise ServerError(self.name, message=f"{self.name} returned malformed response", code="malformed_response") from e

        usage_data = data.get("usage") or {}
        usage = TokenUsage(
            prompt_tokens=usage_data.get("prompt_tokens", 0),
            completion_tokens=usage_data.get("completion_tokens", 0),
            total_tokens=usage_data.get("total_tokens", 0),
        )

        return self._build_result(
            content=content,
            usage=usage,
            model=data.get("model"),
            finish_reason=choice.get("finish_reason") or "stop",
            raw_id=data.get("id"),
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()


class GroqAdapter(OpenAICompatibleAdapter):
    """Groq LPU inference. Fast and cheap, preferred for simple requests."""

    DEFAULT_BASE_URL = "https://api.groq.com/openai/v1"


class CerebrasAdapter(OpenAICompatibleAdapter):
    """Cerebras inference, preferred for high-complexity requests."""

    DEFAULT_BASE_URL = "https://api.cerebras.ai/v1"


class OpenAIAdapter(OpenAICompatibleAdapter):
    DEFAULT_BASE_URL = "https://api.openai.com/v1"
