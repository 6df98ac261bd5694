"""
llmrelay - Circuit Breaker

Implements the Circuit Breaker pattern to stop sending traffic to a backend
that keeps failing.

States:
- CLOSED: Normal operation, requests pass through
- OPEN: Backend is down, requests fail fast with CircuitOpenError
- HALF_OPEN: One trial request at a time tests whether the backend recovered

Transitions:
- CLOSED -> OPEN: failure_threshold consecutive failures within the monitoring window
- OPEN -> HALF_OPEN: after recovery_timeout_seconds
- HALF_OPEN -> CLOSED: success_threshold consecutive trial successes
- HALF_OPEN -> OPEN: any counted trial failure

Errors whose class sets counts_toward_circuit = False (auth, invalid
request) pass through without touching the state.
"""

import asyncio
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from ..core.config import CircuitBreakerConfig
from ..core.errors import CircuitOpenError, RelayError
from ..observability.logging import get_logger


logger = get_logger("llmrelay.routing.circuit_breaker")


class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    OPEN = "open"            # Failing fast
    HALF_OPEN = "half_open"  # Testing recovery


# Called with (backend, old_state, new_state) on every transition
StateListener = Callable[[str, CircuitState, CircuitState], None]


@dataclass
class CircuitStats:
    """Counters for a circuit breaker."""
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    rejected_requests: int = 0
    consecutive_successes: int = 0

    # Timestamps of the current failure streak
    failure_streak: Deque[float] = field(default_factory=deque)

    @property
    def consecutive_failures(self) -> int:
        return len(self.failure_streak)

    @property
    def failure_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.failed_requests / self.total_requests


class CircuitBreaker:
    """
    Circuit breaker for a single backend.

    The clock is injectable so tests can drive recovery timeouts without
    sleeping. All state changes happen under the breaker's own lock, which is
    never held across an await.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateListener] = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._lock = Lock()

        self._state = CircuitState.CLOSED
        self._state_changed_at = clock()
        self._trial_in_flight = False
        self.stats = CircuitStats()

    # ============================================================
    # State inspection
    # ============================================================

    @property
    def state(self) -> CircuitState:
        """Current state, applying a due OPEN -> HALF_OPEN transition."""
        with self._lock:
            self._refresh(self._clock())
            return self._state

    @property
    def is_open(self) -> bool:
        """True while OPEN and the recovery timeout has not elapsed. Read-only."""
        with self._lock:
            return self._state == CircuitState.OPEN and self._remaining_open(self._clock()) > 0

    def _remaining_open(self, now: float) -> float:
        return self.config.recovery_timeout_seconds - (now - self._state_changed_at)

    def _refresh(self, now: float) -> None:
        """Apply timed transitions (must hold lock)."""
        if self._state == CircuitState.OPEN and self._remaining_open(now) <= 0:
            self._transition_to(CircuitState.HALF_OPEN, now)

    # ============================================================
    # Execution
    # ============================================================

    async def execute(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Run `fn` through the breaker.

        Raises:
            CircuitOpenError: without calling fn when the circuit is open or a
                half-open trial is already in flight
        """
        is_trial = self._acquire()

        try:
            result = await fn(*args, **kwargs)
        except asyncio.CancelledError:
            self._release(is_trial)
            raise
        except RelayError as e:
            if e.counts_toward_circuit:
                self._on_failure(is_trial, e)
            else:
                self._release(is_trial)
            raise
        except Exception as e:
            self._on_failure(is_trial, e)
            raise

        self._on_success(is_trial)
        return result

    def _acquire(self) -> bool:
        """Admit a call. Returns True when the call is the half-open trial."""
        with self._lock:
            now = self._clock()
            self._refresh(now)

            if self._state == CircuitState.OPEN:
                self.stats.rejected_requests += 1
                retry_after = max(1, int(self._remaining_open(now) + 0.999))
                raise CircuitOpenError(self.name, retry_after=retry_after)

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    self.stats.rejected_requests += 1
                    raise CircuitOpenError(self.name)
                self._trial_in_flight = True
                return True

            return False

    def _release(self, is_trial: bool) -> None:
        if is_trial:
            with self._lock:
                self._trial_in_flight = False

    def _on_success(self, is_trial: bool) -> None:
        with self._lock:
            self.stats.total_requests += 1
            self.stats.successful_requests += 1
            self.stats.failure_streak.clear()

            if self._state == CircuitState.HALF_OPEN and is_trial:
                self._trial_in_flight = False
                self.stats.consecutive_successes += 1
                if self.stats.consecutive_successes >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED, self._clock())

    def _on_failure(self, is_trial: bool, error: Optional[BaseException] = None) -> None:
        with self._lock:
            now = self._clock()
            self.stats.total_requests += 1
            self.stats.failed_requests += 1
            self.stats.consecutive_successes = 0

            if self._state == CircuitState.HALF_OPEN:
                if is_trial:
                    self._trial_in_flight = False
                self._transition_to(CircuitState.OPEN, now, error)
                return

            if self._state == CircuitState.CLOSED:
                streak = self.stats.failure_streak
                streak.append(now)
                cutoff = now - self.config.monitoring_window_seconds
                while streak and streak[0] <= cutoff:
                    streak.popleft()

                if len(streak) >= self.config.failure_threshold:
                    self._transition_to(CircuitState.OPEN, now, error)

    def record_success(self) -> None:
        """Record a success observed outside execute(); never counts as the half-open trial."""
        self._on_success(is_trial=False)

    def record_failure(self, error: Optional[BaseException] = None) -> None:
        """Record a counted failure observed outside execute(); never counts as the half-open trial."""
        self._on_failure(is_trial=False, error=error)

    def _transition_to(self, new_state: CircuitState, now: float, error: Optional[BaseException] = None) -> None:
        """Transition to a new state (must hold lock)."""
        old_state = self._state
        if old_state == new_state:
            return

        self._state = new_state
        self._state_changed_at = now
        self._trial_in_flight = False
        self.stats.consecutive_successes = 0
        if new_state != CircuitState.OPEN:
            self.stats.failure_streak.clear()

        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            "Circuit state changed",
            backend=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            error=str(error) if error else None,
        )

        if self._on_state_change is not None:
            try:
                self._on_state_change(self.name, old_state, new_state)
            except Exception:
                logger.exception("Circuit state listener failed", backend=self.name)

    # ============================================================
    # Manual control and status
    # ============================================================

    def force_open(self) -> None:
        """Manually open the circuit (for testing or emergency)."""
        with self._lock:
            self._transition_to(CircuitState.OPEN, self._clock())

    def force_close(self) -> None:
        """Manually close the circuit (for testing or recovery)."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED, self._clock())

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._refresh(now)
            return {
                "backend": self.name,
                "state": self._state.value,
                "trial_in_flight": self._trial_in_flight,
                "stats": {
                    "total_requests": self.stats.total_requests,
                    "successful_requests": self.stats.successful_requests,
                    "failed_requests": self.stats.failed_requests,
                    "rejected_requests": self.stats.rejected_requests,
                    "failure_rate": round(self.stats.failure_rate, 4),
                    "consecutive_failures": self.stats.consecutive_failures,
                    "consecutive_successes": self.stats.consecutive_successes,
                },
                "time_in_current_state": round(now - self._state_changed_at, 2),
            }


class CircuitBreakerRegistry:
    """
    Registry managing one circuit breaker per backend.

    Shared by reference between the routing engine and the fallback executor.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[StateListener] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get_breaker(self, name: str) -> CircuitBreaker:
        """Get or create the circuit breaker for a backend."""
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(
                    name, self.config, clock=self._clock, on_state_change=self._on_state_change
                )
            return self._breakers[name]

    def is_open(self, name: str) -> bool:
        return self.get_breaker(name).is_open

    def state(self, name: str) -> CircuitState:
        return self.get_breaker(name).state

    def get_all_status(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_status() for b in breakers}
