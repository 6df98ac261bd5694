"""
llmrelay - Fallback Chain Tests

Verifies:
- Circuit-open candidates are skipped with a single circuit_open trace
- Retryable failures retry on the same backend before falling back
- Non-retryable failures move straight to the next backend
- The request deadline bounds the whole chain
- A retry backoff never blocks concurrent requests
"""

import asyncio
import time
import pytest

from llmrelay.core.config import CircuitBreakerConfig, RetryPolicy
from llmrelay.core.errors import (
    AllBackendsExhaustedError,
    AuthError,
    RateLimitedError,
    RequestTimeoutError,
    ServerError,
)
from llmrelay.core.models import (
    AttemptOutcome,
    ComplexityTier,
    RequestContext,
    RoutingDecision,
)
from llmrelay.routing.circuit_breaker import CircuitBreakerRegistry, CircuitState
from llmrelay.routing.fallback import FallbackChainExecutor
from llmrelay.routing.health import HealthMonitor

from conftest import make_stub


def decision_for(*chain: str, tier: ComplexityTier = ComplexityTier.HIGH) -> RoutingDecision:
    return RoutingDecision(chain=list(chain), tier=tier, requested_tier=tier)


def outcomes(traces):
    return [(t.backend, t.attempt, t.outcome) for t in traces]


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=3), clock=clock)


def build(adapters, breakers, policy: RetryPolicy):
    health = HealthMonitor([a.descriptor for a in adapters.values()])
    executor = FallbackChainExecutor(adapters, breakers, health, retry_policy=policy)
    return executor, health


# ============================================================
# Fallback
# ============================================================

class TestFallbackChain:
    """Walking the chain."""

    @pytest.mark.asyncio
    async def test_first_backend_succeeds(self, breakers, fast_retry):
        """Healthy first candidate: one attempt, no fallback."""
        adapters = {"b1": make_stub("b1"), "b2": make_stub("b2")}
        executor, _ = build(adapters, breakers, fast_retry)

        result = await executor.execute(decision_for("b1", "b2"), RequestContext.create(prompt="hi"))

        assert result.backend_used == "b1"
        assert outcomes(result.attempts) == [("b1", 1, AttemptOutcome.SUCCESS)]
        assert adapters["b2"].calls == 0
        assert result.result.content.startswith("stub:b1:")

    @pytest.mark.asyncio
    async def test_open_circuit_then_rate_limited_then_success(self, breakers, fast_retry):
        """
        b1 is open, b2 is rate limited twice and then answers.

        b1 is never invoked; b2 shows two failures and a success.
        """
        adapters = {
            "b1": make_stub("b1"),
            "b2": make_stub("b2", script=[RateLimitedError("b2"), RateLimitedError("b2")]),
            "b3": make_stub("b3"),
        }
        breakers.get_breaker("b1").force_open()
        executor, _ = build(adapters, breakers, fast_retry)

        result = await executor.execute(decision_for("b1", "b2", "b3"), RequestContext.create(prompt="hi"))

        assert result.backend_used == "b2"
        assert outcomes(result.attempts) == [
            ("b1", 1, AttemptOutcome.CIRCUIT_OPEN),
            ("b2", 1, AttemptOutcome.FAIL),
            ("b2", 2, AttemptOutcome.FAIL),
            ("b2", 3, AttemptOutcome.SUCCESS),
        ]
        assert result.attempts[1].error_kind == "rate_limited"
        assert adapters["b1"].calls == 0
        assert adapters["b3"].calls == 0

    @pytest.mark.asyncio
    async def test_auth_errors_everywhere(self, breakers, fast_retry):
        """Auth failures are not retried and do not trip any breaker."""
        adapters = {name: make_stub(name, script=[AuthError(name)]) for name in ("b1", "b2", "b3")}
        executor, _ = build(adapters, breakers, fast_retry)

        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await executor.execute(decision_for("b1", "b2", "b3"), RequestContext.create(prompt="hi"))

        error = exc_info.value
        assert outcomes(error.attempts) == [
            ("b1", 1, AttemptOutcome.FAIL),
            ("b2", 1, AttemptOutcome.FAIL),
            ("b3", 1, AttemptOutcome.FAIL),
        ]
        assert all(t.error_kind == "auth_error" for t in error.attempts)
        assert isinstance(error.last_error, AuthError)
        assert error.error.details["backends_tried"] == ["b1", "b2", "b3"]
        for name in ("b1", "b2", "b3"):
            assert breakers.state(name) == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_retries_then_fall_back(self, breakers, fast_retry):
        """Three server errors on b1, success on b2; b1's breaker counts one failure."""
        adapters = {
            "b1": make_stub("b1", script=[ServerError("b1", 500), ServerError("b1", 502), ServerError("b1", 503)]),
            "b2": make_stub("b2"),
        }
        executor, _ = build(adapters, breakers, fast_retry)

        result = await executor.execute(decision_for("b1", "b2"), RequestContext.create(prompt="hi"))

        assert result.backend_used == "b2"
        assert [t.outcome for t in result.attempts] == [
            AttemptOutcome.FAIL, AttemptOutcome.FAIL, AttemptOutcome.FAIL, AttemptOutcome.SUCCESS,
        ]
        assert breakers.get_breaker("b1").stats.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_attempts_update_health(self, breakers, fast_retry):
        """Every contacted attempt is a health sample; circuit rejections are not."""
        adapters = {
            "b1": make_stub("b1"),
            "b2": make_stub("b2", script=[ServerError("b2", 500)]),
        }
        breakers.get_breaker("b1").force_open()
        executor, health = build(adapters, breakers, fast_retry)

        await executor.execute(decision_for("b1", "b2"), RequestContext.create(prompt="hi"))

        assert health.status("b1").requests_short == 0
        b2 = health.status("b2")
        assert b2.requests_short == 2
        assert b2.error_rate_short == 0.5

    @pytest.mark.asyncio
    async def test_successful_attempt_records_tokens(self, breakers, fast_retry):
        """Token usage of the answer reaches the backend's health; failed attempts add none."""
        adapters = {"b1": make_stub("b1", script=[ServerError("b1", 503)])}
        executor, health = build(adapters, breakers, fast_retry)

        result = await executor.execute(decision_for("b1"), RequestContext.create(prompt="a" * 400))

        status = health.status("b1")
        assert result.result.usage.total_tokens > 0
        assert status.requests_short == 2
        assert status.tokens_short == result.result.usage.total_tokens
        assert status.tokens_long == result.result.usage.total_tokens

    @pytest.mark.asyncio
    async def test_every_candidate_open(self, breakers, fast_retry):
        """Only circuit_open traces; no adapter is called."""
        adapters = {"b1": make_stub("b1"), "b2": make_stub("b2")}
        breakers.get_breaker("b1").force_open()
        breakers.get_breaker("b2").force_open()
        executor, _ = build(adapters, breakers, fast_retry)

        with pytest.raises(AllBackendsExhaustedError) as exc_info:
            await executor.execute(decision_for("b1", "b2"), RequestContext.create(prompt="hi"))

        assert [t.outcome for t in exc_info.value.attempts] == [AttemptOutcome.CIRCUIT_OPEN] * 2
        assert adapters["b1"].calls == adapters["b2"].calls == 0


# ============================================================
# Deadline
# ============================================================

class TestDeadline:
    """The request deadline bounds the chain."""

    @pytest.mark.asyncio
    async def test_slow_backend_times_out(self, breakers, fast_retry):
        """A 200ms deadline against a 5s backend fails fast with a timeout trace."""
        adapters = {"slow": make_stub("slow", latency_seconds=5.0), "b2": make_stub("b2")}
        executor, health = build(adapters, breakers, fast_retry)
        ctx = RequestContext.create(prompt="hi", deadline_ms=200)

        started = time.monotonic()
        with pytest.raises(RequestTimeoutError) as exc_info:
            await executor.execute(decision_for("slow", "b2"), ctx)
        elapsed = time.monotonic() - started

        assert elapsed < 1.0
        error = exc_info.value
        assert error.status_code == 504
        assert error.attempts[-1].outcome == AttemptOutcome.TIMEOUT
        assert error.attempts[-1].backend == "slow"
        assert error.to_response()["error_kind"] == "timeout"

        # No fallback after the deadline, and the breaker does not count it
        assert adapters["b2"].calls == 0
        assert breakers.get_breaker("slow").stats.consecutive_failures == 0
        assert health.status("slow").error_rate_short == 1.0

    @pytest.mark.asyncio
    async def test_expired_deadline_tries_nothing(self, breakers, fast_retry):
        """A deadline already in the past stops before the first candidate."""
        adapters = {"b1": make_stub("b1")}
        executor, _ = build(adapters, breakers, fast_retry)
        ctx = RequestContext.create(prompt="hi", deadline_ms=100, now=time.monotonic() - 10)

        with pytest.raises(RequestTimeoutError) as exc_info:
            await executor.execute(decision_for("b1"), ctx)

        assert exc_info.value.attempts == []
        assert adapters["b1"].calls == 0

    @pytest.mark.asyncio
    async def test_retry_backoff_respects_deadline(self, breakers):
        """A backoff longer than the remaining time falls back instead of sleeping."""
        policy = RetryPolicy(max_attempts=3, base_delay_seconds=5.0, jitter_factor=0.0, max_delay_seconds=5.0)
        adapters = {
            "b1": make_stub("b1", script=[ServerError("b1", 503)]),
            "b2": make_stub("b2"),
        }
        executor, _ = build(adapters, breakers, policy)
        ctx = RequestContext.create(prompt="hi", deadline_ms=1000)

        result = await executor.execute(decision_for("b1", "b2"), ctx)

        assert result.backend_used == "b2"
        assert outcomes(result.attempts) == [
            ("b1", 1, AttemptOutcome.FAIL),
            ("b2", 1, AttemptOutcome.SUCCESS),
        ]


# ============================================================
# Concurrency
# ============================================================

class TestConcurrentRequests:
    """Requests sharing one executor proceed independently."""

    @staticmethod
    def slow_backoff() -> RetryPolicy:
        return RetryPolicy(max_attempts=2, base_delay_seconds=1.5, jitter_factor=0.0, max_delay_seconds=1.5)

    @pytest.mark.asyncio
    async def test_backoff_does_not_block_other_backend(self, breakers):
        """b1 sleeps in a 1.5 s backoff while a request to b2 completes at once."""
        adapters = {
            "b1": make_stub("b1", script=[RateLimitedError("b1")]),
            "b2": make_stub("b2"),
        }
        executor, _ = build(adapters, breakers, self.slow_backoff())
        finished = {}
        start = time.perf_counter()

        async def timed(label, decision):
            result = await executor.execute(decision, RequestContext.create(prompt=label))
            finished[label] = time.perf_counter() - start
            return result

        slow, fast = await asyncio.gather(
            timed("slow", decision_for("b1")),
            timed("fast", decision_for("b2")),
        )

        assert fast.backend_used == "b2"
        assert slow.backend_used == "b1"
        assert finished["fast"] < 0.5
        assert finished["slow"] >= 1.5
        assert outcomes(slow.attempts) == [
            ("b1", 1, AttemptOutcome.FAIL),
            ("b1", 2, AttemptOutcome.SUCCESS),
        ]

    @pytest.mark.asyncio
    async def test_backoff_does_not_block_same_backend(self, breakers):
        """A second request to a backend that is backing off for another request is served immediately."""
        adapters = {"b1": make_stub("b1", script=[RateLimitedError("b1")])}
        executor, _ = build(adapters, breakers, self.slow_backoff())
        finished = {}
        start = time.perf_counter()

        async def timed(label):
            result = await executor.execute(decision_for("b1"), RequestContext.create(prompt=label))
            finished[label] = time.perf_counter() - start
            return result

        slow, fast = await asyncio.gather(timed("slow"), timed("fast"))

        assert finished["fast"] < 0.5
        assert finished["slow"] >= 1.5
        assert outcomes(fast.attempts) == [("b1", 1, AttemptOutcome.SUCCESS)]
        assert len(slow.attempts) == 2
        assert breakers.state("b1") == CircuitState.CLOSED
