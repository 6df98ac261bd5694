"""
llmrelay - Observability Recorder

Emits one RequestTrace per routed request to every registered sink.

Sinks are fire-and-forget: a sink that raises, or a coroutine sink whose task
fails, is logged and otherwise ignored. Recording never changes the outcome
of the request.

Built-in sinks:
- LoggingSink: one structured log line per request
- MetricsSink: Prometheus counters and histograms
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Set

from .logging import get_logger
from .metrics import MetricsCollector, get_metrics
from ..core.models import AttemptOutcome, AttemptTrace, TokenUsage


logger = get_logger("llmrelay.observability.recorder")


@dataclass
class RequestTrace:
    """Summary of one routed request."""
    request_id: str
    tier: str
    chain: List[str]
    attempts: List[AttemptTrace]
    outcome: str  # "success" | "failure"
    total_latency_ms: float
    backend_used: Optional[str] = None
    error_kind: Optional[str] = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    degraded: bool = False
    finished_at: float = field(default_factory=time.time)

    @property
    def succeeded(self) -> bool:
        return self.outcome == "success"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "tier": self.tier,
            "chain": list(self.chain),
            "attempts": [a.to_dict() for a in self.attempts],
            "outcome": self.outcome,
            "backend_used": self.backend_used,
            "error_kind": self.error_kind,
            "total_latency_ms": round(self.total_latency_ms, 2),
            "token_usage": self.token_usage.to_dict(),
            "cost": round(self.cost, 8),
            "degraded": self.degraded,
            "finished_at": self.finished_at,
        }


# A sink is any callable taking a RequestTrace; coroutine functions allowed
Sink = Callable[[RequestTrace], Any]


class ObservabilityRecorder:
    """Fan-out of request traces to sinks."""

    def __init__(self, sinks: Optional[List[Sink]] = None):
        self._sinks: List[Sink] = list(sinks or [])
        self._pending: Set[asyncio.Task] = set()

    def add_sink(self, sink: Sink) -> None:
        self._sinks.append(sink)

    @property
    def sinks(self) -> List[Sink]:
        return list(self._sinks)

    def record(self, trace: RequestTrace) -> None:
        """Hand the trace to every sink. Never raises."""
        for sink in self._sinks:
            try:
                result = sink(trace)
            except Exception as e:
                logger.warning(
                    "Observability sink failed",
                    sink=_sink_name(sink),
                    error=str(e),
                    error_type=type(e).__name__,
                )
                continue

            if inspect.isawaitable(result):
                self._schedule(sink, result)

    def _schedule(self, sink: Sink, awaitable) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError as e:
            # No running loop: close the coroutine so it is not left un-awaited
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("Observability sink dropped", sink=_sink_name(sink), error=str(e))
            return

        self._pending.add(task)
        task.add_done_callback(lambda t, s=sink: self._on_done(t, s))

    def _on_done(self, task: asyncio.Task, sink: Sink) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Observability sink failed",
                sink=_sink_name(sink),
                error=str(error),
                error_type=type(error).__name__,
            )

    async def drain(self) -> None:
        """Wait for in-flight async sinks (shutdown and tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


def _sink_name(sink: Sink) -> str:
    return getattr(sink, "__name__", type(sink).__name__)


class LoggingSink:
    """Writes one structured log line per request."""

    def __init__(self, logger_name: str = "llmrelay.requests"):
        self.logger = get_logger(logger_name)

    def __call__(self, trace: RequestTrace) -> None:
        fields = {
            "request_id": trace.request_id,
            "tier": trace.tier,
            "chain": trace.chain,
            "backend_used": trace.backend_used,
            "attempt_count": len(trace.attempts),
            "attempt_outcomes": count_outcomes(trace.attempts),
            "total_latency_ms": round(trace.total_latency_ms, 2),
            "total_tokens": trace.token_usage.total_tokens,
            "cost_usd": round(trace.cost, 8),
            "degraded": trace.degraded,
        }
        if trace.succeeded:
            self.logger.info("Request routed", **fields)
        else:
            self.logger.warning("Request failed", error_kind=trace.error_kind, **fields)


class MetricsSink:
    """Feeds Prometheus counters and histograms."""

    def __init__(self, metrics: Optional[MetricsCollector] = None):
        self._metrics = metrics

    @property
    def metrics(self) -> MetricsCollector:
        return self._metrics or get_metrics()

    def __call__(self, trace: RequestTrace) -> None:
        metrics = self.metrics

        metrics.record_request(
            tier=trace.tier,
            backend=trace.backend_used,
            outcome=trace.outcome,
            duration_seconds=trace.total_latency_ms / 1000.0,
            error_kind=trace.error_kind,
        )

        previous: Optional[AttemptTrace] = None
        for attempt in trace.attempts:
            metrics.record_attempt(
                backend=attempt.backend,
                outcome=attempt.outcome.value,
                latency_seconds=attempt.latency_ms / 1000.0,
                error_kind=attempt.error_kind,
            )
            if previous is not None and previous.backend != attempt.backend:
                metrics.record_fallback(
                    from_backend=previous.backend,
                    to_backend=attempt.backend,
                    reason=previous.error_kind or previous.outcome.value,
                )
            previous = attempt

        if trace.succeeded and trace.backend_used:
            usage = trace.token_usage
            metrics.record_tokens(trace.backend_used, usage.prompt_tokens, usage.completion_tokens)
            metrics.record_cost(trace.backend_used, trace.cost)


def default_sinks(metrics: Optional[MetricsCollector] = None) -> List[Sink]:
    return [LoggingSink(), MetricsSink(metrics)]


def build_trace(
    request_id: str,
    tier: str,
    chain: List[str],
    attempts: List[AttemptTrace],
    total_latency_ms: float,
    backend_used: Optional[str] = None,
    error_kind: Optional[str] = None,
    token_usage: Optional[TokenUsage] = None,
    cost: float = 0.0,
    degraded: bool = False,
) -> RequestTrace:
    return RequestTrace(
        request_id=request_id,
        tier=tier,
        chain=list(chain),
        attempts=list(attempts),
        outcome="success" if backend_used and error_kind is None else "failure",
        total_latency_ms=total_latency_ms,
        backend_used=backend_used,
        error_kind=error_kind,
        token_usage=token_usage or TokenUsage(),
        cost=cost,
        degraded=degraded,
    )


def count_outcomes(attempts: List[AttemptTrace]) -> Dict[str, int]:
    counts = {outcome.value: 0 for outcome in AttemptOutcome}
    for attempt in attempts:
        counts[attempt.outcome.value] += 1
    return counts
