"""
llmrelay - Relay Service

Wires the components into one request path:

    RequestContext -> RoutingEngine -> FallbackChainExecutor -> RouteResult
                                                   |
                                      ObservabilityRecorder (always)

The service owns the shared HealthMonitor and CircuitBreakerRegistry and
passes them by reference to the routing engine and the fallback executor.

Usage:
    service = RelayService.from_env()
    await service.start()

    result = await service.route_prompt("Summarise this paragraph ...")
    print(result.backend_used, result.result.content)

    await service.close()
"""

import asyncio
import time
from typing import Any, Callable, Dict, List, Mapping, Optional

from opentelemetry.trace import Status, StatusCode

from .adapters import BaseAdapter, build_adapters
from .core.config import RelayConfig, load_config_from_env
from .core.errors import ErrorKind, RelayError
from .core.models import AttemptTrace, RequestContext, RouteResult, RoutingDecision
from .observability.logging import LogContext, get_logger
from .observability.metrics import get_metrics
from .observability.recorder import ObservabilityRecorder, build_trace, default_sinks
from .observability.tracing import get_tracing_manager
from .routing.circuit_breaker import CircuitBreakerRegistry, CircuitState
from .routing.classifier import ComplexityClassifier
from .routing.fallback import FallbackChainExecutor
from .routing.health import HealthMonitor
from .routing.retry import RetryExecutor
from .routing.router import RoutingEngine
from .routing.strategies import get_strategy


logger = get_logger("llmrelay.service")

# error_kind of a request abandoned by its caller
CANCELLED = "cancelled"


class RelayService:
    """
    Entry point for routing requests across backends.

    Every call to route() produces exactly one RequestTrace, whether the
    request succeeds or fails.
    """

    def __init__(
        self,
        adapters: Mapping[str, BaseAdapter],
        config: Optional[RelayConfig] = None,
        recorder: Optional[ObservabilityRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
        health_clock: Callable[[], float] = time.time,
        retry_executor: Optional[RetryExecutor] = None,
    ):
        self.config = config or RelayConfig()
        self.adapters: Dict[str, BaseAdapter] = dict(adapters)
        self._clock = clock

        self.health = HealthMonitor(
            (a.descriptor for a in self.adapters.values()),
            self.config.health,
            clock=health_clock,
        )
        self.breakers = CircuitBreakerRegistry(
            self.config.circuit_breaker,
            clock=clock,
            on_state_change=self._on_circuit_change,
        )

        metrics = get_metrics()
        for name in self.adapters:
            self.breakers.get_breaker(name)
            metrics.set_circuit_breaker_state(name, CircuitState.CLOSED.value)

        self.classifier = ComplexityClassifier(self.config.classifier)
        self.router = RoutingEngine(
            self.adapters,
            self.health,
            self.breakers,
            classifier=self.classifier,
            strategy=get_strategy(self.config.ranking_strategy, self.config.ranking),
        )
        self.executor = FallbackChainExecutor(
            self.adapters,
            self.breakers,
            self.health,
            retry_policy=self.config.retry,
            retry_executor=retry_executor or RetryExecutor(self.config.retry, clock=clock),
            clock=clock,
        )
        self.recorder = recorder or ObservabilityRecorder(default_sinks())

    @classmethod
    def from_config(cls, config: RelayConfig, **kwargs) -> "RelayService":
        adapters = build_adapters(config)
        if not adapters:
            logger.warning("No backends enabled")
        return cls(adapters, config, **kwargs)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None, **kwargs) -> "RelayService":
        return cls.from_config(load_config_from_env(env), **kwargs)

    # ============================================================
    # Routing
    # ============================================================

    async def route(self, ctx: RequestContext) -> RouteResult:
        """
        Route one request.

        Raises:
            AllBackendsExhaustedError: no backend produced a result
            RequestTimeoutError: the deadline elapsed first
        """
        if ctx.deadline is None and self.config.default_deadline_ms:
            ctx.deadline = self._clock() + self.config.default_deadline_ms / 1000.0

        start = time.perf_counter()
        decision: Optional[RoutingDecision] = None
        attempts: List[AttemptTrace] = []

        with LogContext.scope(request_id=ctx.request_id) as log_ctx, get_tracing_manager().start_span(
            "llmrelay.route",
            attributes={"llmrelay.request_id": ctx.request_id},
        ) as span:
            try:
                decision = self.router.route(ctx)
                log_ctx.update(tier=decision.tier.value)
                span.set_attribute("llmrelay.tier", decision.tier.value)
                span.set_attribute("llmrelay.chain", ",".join(decision.chain))

                result = await self.executor.execute(decision, ctx, attempts)
            except RelayError as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                self._record_failure(ctx, decision, e.attempts, e.kind.value, start)
                raise
            except asyncio.CancelledError:
                span.set_status(Status(StatusCode.ERROR, "cancelled"))
                self._record_failure(ctx, decision, attempts, CANCELLED, start)
                raise
            except Exception as e:
                span.set_status(Status(StatusCode.ERROR, str(e)))
                logger.exception("Unexpected error while routing", error_type=type(e).__name__)
                self._record_failure(ctx, decision, attempts, ErrorKind.SERVER_ERROR.value, start)
                raise

            span.set_attribute("llm.backend", result.backend_used)
            span.set_attribute("llmrelay.attempts", len(result.attempts))
            log_ctx.update(backend=result.backend_used)

            self.recorder.record(build_trace(
                request_id=ctx.request_id,
                tier=result.complexity_tier.value,
                chain=decision.chain,
                attempts=result.attempts,
                total_latency_ms=result.total_latency_ms,
                backend_used=result.backend_used,
                token_usage=result.token_usage,
                cost=result.result.cost,
                degraded=decision.degraded,
            ))
        return result

    async def route_prompt(
        self,
        prompt: Optional[str] = None,
        messages: Optional[List[Any]] = None,
        **kwargs,
    ) -> RouteResult:
        """Build a RequestContext from plain fields and route it."""
        kwargs.setdefault("deadline_ms", self.config.default_deadline_ms)
        ctx = RequestContext.create(prompt=prompt, messages=messages, now=self._clock(), **kwargs)
        return await self.route(ctx)

    def _record_failure(
        self,
        ctx: RequestContext,
        decision: Optional[RoutingDecision],
        attempts: List[AttemptTrace],
        error_kind: str,
        start: float,
    ) -> None:
        tier = decision.tier.value if decision else (
            ctx.complexity_hint.value if ctx.complexity_hint else "unknown"
        )
        self.recorder.record(build_trace(
            request_id=ctx.request_id,
            tier=tier,
            chain=decision.chain if decision else [],
            attempts=attempts,
            total_latency_ms=(time.perf_counter() - start) * 1000,
            error_kind=error_kind,
            degraded=decision.degraded if decision else False,
        ))

    def _on_circuit_change(self, name: str, old: CircuitState, new: CircuitState) -> None:
        get_metrics().set_circuit_breaker_state(name, new.value)

    # ============================================================
    # Health
    # ============================================================

    def health_status(self) -> List[Dict[str, Any]]:
        """Per-backend health merged with circuit state, sorted by name."""
        snapshot = self.health.snapshot()
        statuses = []
        for name in sorted(self.adapters):
            adapter = self.adapters[name]
            status = snapshot[name]
            statuses.append({
                "name": name,
                "model": adapter.model,
                "circuit_state": self.breakers.state(name).value,
                "availability": status.available and adapter.is_available(),
                "error_rate_short": round(status.error_rate_short, 4),
                "error_rate_long": round(status.error_rate_long, 4),
                "latency_p50_ms": round(status.latency_p50_ms, 2),
                "latency_p95_ms": round(status.latency_p95_ms, 2),
                "quota_used": status.quota_used,
                "quota_limit": status.quota_limit,
                "last_checked": status.last_checked,
                "last_error": status.last_error,
            })
        return statuses

    def is_ready(self) -> bool:
        """True when at least one backend is available with its circuit not open."""
        return any(
            s["availability"] and s["circuit_state"] != CircuitState.OPEN.value
            for s in self.health_status()
        )

    async def run_health_checks(self) -> Dict[str, bool]:
        return await self.health.run_probes_once(self.adapters)

    # ============================================================
    # Lifecycle
    # ============================================================

    async def start(self, probe: bool = True) -> None:
        if probe and self.adapters:
            self.health.start_probing(self.adapters)
        logger.info(
            "Relay service started",
            backends=sorted(self.adapters),
            ranking_strategy=self.config.ranking_strategy,
        )

    async def close(self) -> None:
        await self.health.stop_probing()
        await self.recorder.drain()
        for adapter in self.adapters.values():
            await adapter.close()
        logger.info("Relay service stopped")
