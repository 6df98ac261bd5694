"""
llmrelay - Retry Executor

Retries a single backend call with exponential backoff and jitter.

Only errors whose class is marked retryable are retried
(RateLimited, TransientNetwork, ServerError). Auth and invalid-request
errors are returned to the caller on the first attempt.
"""

import asyncio
import random
import time
from typing import Any, Awaitable, Callable, Optional

from ..core.config import RetryPolicy
from ..core.errors import RelayError
from ..observability.logging import get_logger


logger = get_logger("llmrelay.routing.retry")

# Called once per attempt with (attempt_number, error_or_None, latency_ms)
AttemptCallback = Callable[[int, Optional[BaseException], float], None]


def compute_backoff(
    attempt: int,
    policy: RetryPolicy,
    rng: Optional[random.Random] = None,
) -> float:
    """
    Delay to wait after the given (1-based) failed attempt.

    Sequence with defaults: 0.5s, 1s, 2s, 4s, 8s (plus up to 25% jitter)
    """
    rng = rng or random
    delay = min(
        policy.base_delay_seconds * (policy.multiplier ** (attempt - 1)),
        policy.max_delay_seconds,
    )
    return delay + rng.uniform(0, delay * policy.jitter_factor)


def should_retry(error: BaseException) -> bool:
    """Retry only taxonomy errors that say they are retryable."""
    return isinstance(error, RelayError) and error.retryable


class RetryExecutor:
    """
    Runs a zero-argument coroutine factory with retries.

    Backoff sleeps are asyncio sleeps, so other requests keep running.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.policy = policy or RetryPolicy()
        self._rng = rng or random.Random()
        self._clock = clock

    async def with_retry(
        self,
        fn: Callable[[], Awaitable[Any]],
        policy: Optional[RetryPolicy] = None,
        on_attempt: Optional[AttemptCallback] = None,
        deadline: Optional[float] = None,
        backend: str = "",
    ) -> Any:
        """
        Call fn until it succeeds, a non-retryable error occurs, or the policy
        is exhausted.

        Args:
            fn: Zero-argument coroutine factory, called once per attempt
            policy: Overrides the executor's default policy
            on_attempt: Invoked after every attempt
            deadline: Absolute monotonic time; a backoff that would end past it
                is not taken
            backend: Backend name, for logs

        Returns:
            fn's first successful result

        Raises:
            The last error raised by fn
        """
        policy = policy or self.policy
        attempt = 0

        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                result = await fn()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                latency_ms = (time.perf_counter() - start) * 1000
                if on_attempt is not None:
                    on_attempt(attempt, e, latency_ms)

                if not should_retry(e) or attempt >= policy.max_attempts:
                    raise

                delay = self._delay_for(attempt, e, policy)
                if deadline is not None and self._clock() + delay >= deadline:
                    logger.info(
                        "Skipping retry, backoff would pass the deadline",
                        backend=backend,
                        attempt=attempt,
                        delay_ms=round(delay * 1000, 2),
                    )
                    raise

                logger.warning(
                    "Retrying backend call",
                    backend=backend,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay_ms=round(delay * 1000, 2),
                    error_kind=getattr(e, "kind", None) and e.kind.value,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                continue

            if on_attempt is not None:
                on_attempt(attempt, None, (time.perf_counter() - start) * 1000)
            return result

    def _delay_for(self, attempt: int, error: BaseException, policy: RetryPolicy) -> float:
        delay = compute_backoff(attempt, policy, self._rng)

        # Honour a server-provided Retry-After, capped by the policy
        retry_after = error.error.retry_after if isinstance(error, RelayError) else None
        if retry_after:
            delay = max(delay, min(float(retry_after), policy.max_delay_seconds))
        return delay
