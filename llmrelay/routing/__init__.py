"""
llmrelay Routing Module

Complexity classification, backend health, circuit breaking, retries,
ranking and the fallback chain.
"""

from .classifier import ComplexityClassifier, ComplexityAssessment
from .health import HealthMonitor, HealthRecord, HealthStatus, percentile
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStats,
)
from .retry import RetryExecutor, compute_backoff, should_retry
from .strategies import (
    BaseStrategy,
    CompositeStrategy,
    PriorityStrategy,
    ScoredCandidate,
    get_strategy,
)
from .router import RoutingEngine
from .fallback import FallbackChainExecutor

__all__ = [
    # Classification
    "ComplexityClassifier",
    "ComplexityAssessment",
    # Health
    "HealthMonitor",
    "HealthRecord",
    "HealthStatus",
    "percentile",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    # Retry
    "RetryExecutor",
    "compute_backoff",
    "should_retry",
    # Ranking
    "BaseStrategy",
    "CompositeStrategy",
    "PriorityStrategy",
    "ScoredCandidate",
    "get_strategy",
    # Engine
    "RoutingEngine",
    "FallbackChainExecutor",
]
