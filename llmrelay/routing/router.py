"""
llmrelay - Routing Engine

Turns a request into an ordered fallback chain:
1. Classify complexity (an explicit hint wins)
2. Keep backends that support the tier, are available and have quota left
3. Drop backends whose circuit is open
4. Rank the rest with the ranking strategy
5. Move a backend named by the model hint to the front

When nothing is eligible for the tier the engine degrades to the next-lower
tier (high -> medium -> low) before giving up.
"""

from typing import Dict, List, Mapping, Optional, Tuple

from ..adapters.base import BaseAdapter
from ..core.errors import AllBackendsExhaustedError
from ..core.models import ComplexityTier, RequestContext, RoutingDecision
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from .circuit_breaker import CircuitBreakerRegistry
from .classifier import ComplexityClassifier
from .health import HealthMonitor, HealthStatus
from .strategies import BaseStrategy, CompositeStrategy, ScoredCandidate


logger = get_logger("llmrelay.routing.router")


class RoutingEngine:
    """
    Builds routing decisions from live health and breaker state.

    Holds references to the shared HealthMonitor and CircuitBreakerRegistry;
    it only reads them.
    """

    def __init__(
        self,
        adapters: Mapping[str, BaseAdapter],
        health: HealthMonitor,
        breakers: CircuitBreakerRegistry,
        classifier: Optional[ComplexityClassifier] = None,
        strategy: Optional[BaseStrategy] = None,
    ):
        self.adapters = adapters
        self.health = health
        self.breakers = breakers
        self.classifier = classifier or ComplexityClassifier()
        self.strategy = strategy or CompositeStrategy()

    def route(self, ctx: RequestContext) -> RoutingDecision:
        """
        Produce the fallback chain for a request.

        Raises:
            AllBackendsExhaustedError: no backend is eligible at any tier
                (carries no attempts)
        """
        assessment = self.classifier.assess(ctx)
        requested = assessment.tier

        tier: Optional[ComplexityTier] = requested
        while tier is not None:
            ranked, excluded = self._rank_for_tier(tier)
            if ranked:
                break
            logger.info(
                "No eligible backend for tier",
                request_id=ctx.request_id,
                tier=tier.value,
                excluded=excluded,
            )
            tier = tier.lower()

        if tier is None:
            raise AllBackendsExhaustedError(
                message=f"No eligible backend for tier {requested.value} or below",
                request_id=ctx.request_id,
            )

        chain = self._apply_model_hint([c.name for c in ranked], ctx.model_hint)

        reasoning = f"tier {requested.value}: {assessment.reasoning}"
        if tier != requested:
            reasoning += f"; degraded to {tier.value}"

        decision = RoutingDecision(
            chain=chain,
            tier=tier,
            requested_tier=requested,
            scores={c.name: c.score for c in ranked},
            reasoning=reasoning,
        )

        get_metrics().record_routing_decision(tier.value, chain[0], decision.degraded)
        logger.debug(
            "Routing decision",
            request_id=ctx.request_id,
            chain=chain,
            tier=tier.value,
            requested_tier=requested.value,
            reasoning=reasoning,
        )
        return decision

    def eligible_backends(self, tier: ComplexityTier) -> List[str]:
        ranked, _ = self._rank_for_tier(tier)
        return [c.name for c in ranked]

    def _health_for(self, name: str) -> Optional[HealthStatus]:
        try:
            return self.health.status(name)
        except KeyError:
            return None

    def _rank_for_tier(self, tier: ComplexityTier) -> Tuple[List[ScoredCandidate], Dict[str, str]]:
        candidates = []
        excluded: Dict[str, str] = {}

        for name in sorted(self.adapters):
            adapter = self.adapters[name]
            status = self._health_for(name)

            if not adapter.descriptor.supports(tier):
                excluded[name] = "tier_not_supported"
            elif not adapter.is_available():
                excluded[name] = "not_configured"
            elif status is not None and status.quota_exhausted:
                excluded[name] = "quota_exhausted"
            elif status is not None and not status.available:
                excluded[name] = "unavailable"
            elif not adapter.has_capacity(tier, status):
                excluded[name] = "no_capacity"
            elif self.breakers.is_open(name):
                excluded[name] = "circuit_open"
            else:
                candidates.append((adapter.descriptor, status))

        return self.strategy.rank(candidates), excluded

    def _apply_model_hint(self, chain: List[str], model_hint: Optional[str]) -> List[str]:
        if not model_hint:
            return chain

        hint = model_hint.lower()
        for name in chain:
            descriptor = self.adapters[name].descriptor
            if hint in (name.lower(), descriptor.model.lower(), f"{name}/{descriptor.model}".lower()):
                return [name] + [n for n in chain if n != name]

        logger.debug("Model hint matched no eligible backend", model_hint=model_hint)
        return chain
