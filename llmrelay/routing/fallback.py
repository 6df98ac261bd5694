"""
llmrelay - Fallback Chain Executor

Walks a routing decision's chain until one backend succeeds.

Per candidate:
    deadline check -> circuit breaker -> retry executor -> adapter.invoke

Rules:
- One AttemptTrace per adapter invocation, retries included
- A candidate rejected by its breaker costs no adapter call and leaves one
  circuit_open trace
- Every trace that reached a backend updates the health monitor
- The candidate call is bounded by the request's remaining time and is
  cancelled when the deadline fires
- Errors are never swallowed: the caller gets RequestTimeoutError or
  AllBackendsExhaustedError carrying every attempt
"""

import asyncio
import time
from typing import Callable, List, Mapping, Optional

from ..adapters.base import BaseAdapter
from ..core.config import RetryPolicy
from ..core.errors import (
    AllBackendsExhaustedError,
    CircuitOpenError,
    RelayError,
    RequestTimeoutError,
    normalize_error,
)
from ..core.models import (
    AttemptOutcome,
    AttemptTrace,
    GenerationResult,
    RequestContext,
    RouteResult,
    RoutingDecision,
)
from ..observability.logging import get_logger
from .circuit_breaker import CircuitBreakerRegistry
from .health import HealthMonitor
from .retry import RetryExecutor


logger = get_logger("llmrelay.routing.fallback")


class FallbackChainExecutor:
    """Executes a routing decision with retry, circuit breaking and fallback."""

    def __init__(
        self,
        adapters: Mapping[str, BaseAdapter],
        breakers: CircuitBreakerRegistry,
        health: HealthMonitor,
        retry_policy: Optional[RetryPolicy] = None,
        retry_executor: Optional[RetryExecutor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.adapters = adapters
        self.breakers = breakers
        self.health = health
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry = retry_executor or RetryExecutor(self.retry_policy, clock=clock)
        self._clock = clock

    async def execute(
        self,
        decision: RoutingDecision,
        ctx: RequestContext,
        attempts: Optional[List[AttemptTrace]] = None,
    ) -> RouteResult:
        """
        Run the chain.

        Traces are appended to `attempts` as they happen, so a caller that
        passes its own list still sees them when the request is cancelled.

        Raises:
            RequestTimeoutError: the deadline elapsed first
            AllBackendsExhaustedError: every candidate failed
        """
        start = time.perf_counter()
        attempts = attempts if attempts is not None else []
        last_error: Optional[RelayError] = None

        for index, name in enumerate(decision.chain):
            remaining = ctx.remaining_seconds(self._clock())
            if remaining is not None and remaining <= 0:
                raise RequestTimeoutError(
                    f"Deadline exceeded before trying {name}",
                    attempts=attempts,
                    backend=name,
                    request_id=ctx.request_id,
                )

            if index > 0:
                logger.warning(
                    "Falling back to next backend",
                    request_id=ctx.request_id,
                    from_backend=decision.chain[index - 1],
                    to_backend=name,
                    reason=last_error.kind.value if last_error else None,
                )

            try:
                result = await self._run_candidate(name, ctx, attempts, remaining)
            except CircuitOpenError as e:
                attempts.append(AttemptTrace(
                    backend=name,
                    attempt=1,
                    outcome=AttemptOutcome.CIRCUIT_OPEN,
                    error_kind=e.kind.value,
                    error_message=str(e),
                ))
                last_error = e
                continue
            except RequestTimeoutError:
                raise
            except RelayError as e:
                last_error = e
                continue

            return RouteResult(
                result=result,
                backend_used=name,
                complexity_tier=decision.tier,
                attempts=attempts,
                total_latency_ms=(time.perf_counter() - start) * 1000,
            )

        raise AllBackendsExhaustedError(
            attempts=attempts,
            last_error=last_error,
            request_id=ctx.request_id,
        )

    async def _run_candidate(
        self,
        name: str,
        ctx: RequestContext,
        attempts: List[AttemptTrace],
        remaining: Optional[float],
    ) -> GenerationResult:
        adapter = self.adapters[name]
        breaker = self.breakers.get_breaker(name)

        # Attempt number, start time and token usage of the invocation in flight
        state = {"attempt": 1, "started": time.perf_counter(), "tokens": 0}

        async def invoke() -> GenerationResult:
            result = await adapter.invoke(ctx)
            state["tokens"] = result.usage.total_tokens
            return result

        def on_attempt(attempt: int, error: Optional[BaseException], latency_ms: float) -> None:
            trace = AttemptTrace(
                backend=name,
                attempt=attempt,
                outcome=AttemptOutcome.SUCCESS if error is None else AttemptOutcome.FAIL,
                latency_ms=latency_ms,
                error_kind=error.kind.value if isinstance(error, RelayError) else None,
                error_message=str(error) if error is not None else None,
            )
            attempts.append(trace)
            self.health.record_attempt(trace, tokens=state["tokens"] if error is None else 0)
            state["attempt"] = attempt + 1
            state["started"] = time.perf_counter()

        call = breaker.execute(
            self.retry.with_retry,
            invoke,
            self.retry_policy,
            on_attempt=on_attempt,
            deadline=ctx.deadline,
            backend=name,
        )

        try:
            if remaining is None:
                return await call
            return await asyncio.wait_for(call, timeout=remaining)
        except asyncio.TimeoutError:
            trace = AttemptTrace(
                backend=name,
                attempt=state["attempt"],
                outcome=AttemptOutcome.TIMEOUT,
                latency_ms=(time.perf_counter() - state["started"]) * 1000,
                error_kind="timeout",
                error_message="request deadline exceeded",
            )
            attempts.append(trace)
            self.health.record_attempt(trace)
            logger.warning(
                "Request deadline exceeded",
                request_id=ctx.request_id,
                backend=name,
                attempt=trace.attempt,
            )
            raise RequestTimeoutError(
                f"Deadline exceeded while waiting for {name}",
                attempts=attempts,
                backend=name,
                request_id=ctx.request_id,
            ) from None
        except (RelayError, asyncio.CancelledError):
            raise
        except Exception as e:
            raise normalize_error(e, name, ctx.request_id) from e
