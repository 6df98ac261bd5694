"""
llmrelay - Stub Backend Adapter

Deterministic in-process adapter used for local mode and tests.
No network calls, no backend keys required.

A script can be supplied to make the stub fail or stall in a controlled
order; once the script is exhausted it answers deterministically.
"""

import asyncio
from typing import Iterable, List, Optional, Union

from .base import AdapterConfig, BaseAdapter
from ..core.errors import RelayError
from ..core.models import BackendDescriptor, GenerationResult, RequestContext, TokenUsage


# One scripted step: raise this error, return this content, or sleep this
# many seconds before answering.
ScriptStep = Union[RelayError, str, float]


class StubAdapter(BaseAdapter):
    """Deterministic adapter for tests/smoke checks."""

    def __init__(
        self,
        descriptor: BackendDescriptor,
        config: Optional[AdapterConfig] = None,
        script: Optional[Iterable[ScriptStep]] = None,
        latency_seconds: float = 0.0,
        healthy: bool = True,
    ):
        super().__init__(descriptor, config)
        self.script: List[ScriptStep] = list(script or [])
        self.latency_seconds = latency_seconds
        self.healthy = healthy
        self.calls = 0
        self.probes = 0

    def is_available(self) -> bool:
        return True

    async def _generate(self, ctx: RequestContext) -> GenerationResult:
        self.calls += 1

        step = self.script.pop(0) if self.script else None
        delay = self.latency_seconds
        content = None

        if isinstance(step, RelayError):
            if delay:
                await asyncio.sleep(delay)
            raise step
        if isinstance(step, (int, float)):
            delay = float(step)
        elif isinstance(step, str):
            content = step

        if delay:
            await asyncio.sleep(delay)

        if content is None:
            content = f"stub:{self.name}: {ctx.prompt_text[:64]}"
            if ctx.wants_structured:
                content = '{"backend": "%s", "status": "ok"}' % self.name

        usage = TokenUsage(
            prompt_tokens=max(1, len(ctx.prompt_text) // 4),
            completion_tokens=max(1, len(content) // 4),
        )
        return self._build_result(content=content, usage=usage, raw_id=f"stub-{self.calls}")

    async def probe(self) -> bool:
        self.probes += 1
        return self.healthy
