"""
llmrelay - Ranking Strategies

Scores eligible backends to order the fallback chain.

The composite score combines:
- Priority weight (normalised against the highest among the candidates)
- Reliability (1 - short-window error rate)
- Latency (p50 relative to a reference latency)
- Quota headroom

Ties are broken by higher priority weight, then by name, so the ordering is
deterministic for identical inputs.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from ..core.config import RankingWeights
from ..core.models import BackendDescriptor
from .health import HealthStatus


@dataclass
class ScoredCandidate:
    """A candidate with its calculated score."""
    name: str
    priority_weight: float
    score: float
    breakdown: Dict[str, float]  # Score breakdown for debugging

    @property
    def sort_key(self) -> Tuple[float, float, str]:
        return (-self.score, -self.priority_weight, self.name)


class BaseStrategy(ABC):
    """Base class for ranking strategies."""

    @abstractmethod
    def score_candidate(
        self,
        descriptor: BackendDescriptor,
        health: Optional[HealthStatus],
        max_priority: float,
    ) -> ScoredCandidate:
        """Higher score = better candidate."""
        pass

    def rank(
        self,
        candidates: Sequence[Tuple[BackendDescriptor, Optional[HealthStatus]]],
    ) -> List[ScoredCandidate]:
        """Score and order candidates, best first."""
        if not candidates:
            return []

        max_priority = max(d.priority_weight for d, _ in candidates)
        scored = [self.score_candidate(d, h, max_priority) for d, h in candidates]
        scored.sort(key=lambda c: c.sort_key)
        return scored


class CompositeStrategy(BaseStrategy):
    """Weighted sum of priority, reliability, latency and quota headroom."""

    def __init__(self, weights: Optional[RankingWeights] = None):
        self.weights = weights or RankingWeights()

    def score_candidate(
        self,
        descriptor: BackendDescriptor,
        health: Optional[HealthStatus],
        max_priority: float,
    ) -> ScoredCandidate:
        w = self.weights

        priority = descriptor.priority_weight / max_priority if max_priority > 0 else 0.0

        if health is None:
            reliability, latency, quota = 1.0, 1.0, 1.0
        else:
            reliability = 1.0 - health.error_rate_short
            # No samples yet: assume fast rather than penalise a fresh backend
            latency = w.latency_reference_ms / (w.latency_reference_ms + health.latency_p50_ms)
            quota = health.quota_headroom

        breakdown = {
            "priority": w.priority * priority,
            "reliability": w.reliability * reliability,
            "latency": w.latency * latency,
            "quota": w.quota * quota,
        }

        return ScoredCandidate(
            name=descriptor.name,
            priority_weight=descriptor.priority_weight,
            score=sum(breakdown.values()),
            breakdown=breakdown,
        )


class PriorityStrategy(BaseStrategy):
    """Static ordering by priority weight only; ignores live health."""

    def score_candidate(
        self,
        descriptor: BackendDescriptor,
        health: Optional[HealthStatus],
        max_priority: float,
    ) -> ScoredCandidate:
        return ScoredCandidate(
            name=descriptor.name,
            priority_weight=descriptor.priority_weight,
            score=descriptor.priority_weight,
            breakdown={"priority": descriptor.priority_weight},
        )


STRATEGIES = {
    "composite": CompositeStrategy,
    "priority": PriorityStrategy,
}


def get_strategy(name: str = "composite", weights: Optional[RankingWeights] = None) -> BaseStrategy:
    strategy_class = STRATEGIES.get(name)
    if strategy_class is None:
        raise ValueError(f"Unknown ranking strategy: {name}")
    if strategy_class is CompositeStrategy:
        return CompositeStrategy(weights)
    return strategy_class()
