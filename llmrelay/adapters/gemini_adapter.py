"""
llmrelay - Gemini Backend Adapter

Adapter for Google's Gemini generateContent API (gemini-1.5-flash,
gemini-1.5-pro).
"""

from typing import Any, Dict, List, Optional

import httpx

from .base import AdapterConfig, BaseAdapter
from ..core.errors import RelayError, ServerError, handle_gemini_error
from ..core.models import (
    BackendDescriptor,
    GenerationResult,
    Message,
    RequestContext,
    Role,
    TokenUsage,
)


class GeminiAdapter(BaseAdapter):
    """
    Adapter for the Gemini REST API.

    System messages are sent as `systemInstruction`; assistant turns use the
    `model` role.
    """

    DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

    FINISH_REASON_MAP = {
        "STOP": "stop",
        "MAX_TOKENS": "length",
        "SAFETY": "content_filter",
        "RECITATION": "content_filter",
    }

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
            headers={"x-goog-api-key": self.config.api_key or ""},
            timeout=self.config.timeout,
            transport=transport,
        )

    async def _generate(self, ctx: RequestContext) -> GenerationResult:
        payload = self._build_payload(ctx)

        response = await self.client.post(f"/models/{self.model}:generateContent", json=payload)
        response.raise_for_status()
        data = response.json()

        return self._parse_response(data)

    async def probe(self) -> bool:
        try:
            response = await self.client.get(f"/models/{self.model}")
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def _normalize_error(self, error: Exception, request_id: str = "") -> RelayError:
        return handle_gemini_error(error, self.name, request_id)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _build_payload(self, ctx: RequestContext) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "contents": self._convert_contents(ctx.messages),
        }

        generation_config: Dict[str, Any] = {"maxOutputTokens": ctx.max_output_tokens}
        if ctx.wants_structured:
            generation_config["responseMimeType"] = "application/json"
        payload["generationConfig"] = generation_config

        system_instruction = self._extract_system_instruction(ctx.messages)
        if system_instruction:
            payload["systemInstruction"] = {"parts": [{"text": system_instruction}]}

        return payload

    def _extract_system_instruction(self, messages: List[Message]) -> Optional[str]:
        parts = [m.content for m in messages if m.role == Role.SYSTEM]
        return "\n".join(parts) if parts else None

    def _convert_contents(self, messages: List[Message]) -> List[Dict[str, Any]]:
        result = []
        for msg in messages:
            # Skip system messages (handled separately)
            if msg.role == Role.SYSTEM:
                continue
            role = "model" if msg.role == Role.ASSISTANT else "user"
            result.append({"role": role, "parts": [{"text": msg.content}]})
        return result

    def _parse_response(self, data: Dict[str, Any]) -> GenerationResult:
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            raise ServerError(
                self.name,
                message=f"{self.name} returned no candidates" + (f" ({block_reason})" if block_reason else ""),
                code="empty_response",
            )

        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(part.get("text", "") for part in parts)

        usage_metadata = data.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=usage_metadata.get("promptTokenCount", 0),
            completion_tokens=usage_metadata.get("candidatesTokenCount", 0),
            total_tokens=usage_metadata.get("totalTokenCount", 0),
        )

        return self._build_result(
            content=text,
            usage=usage,
            model=data.get("modelVersion"),
            finish_reason=self.FINISH_REASON_MAP.get(candidate.get("finishReason", "STOP"), "stop"),
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()
