"""
llmrelay - Complexity Classifier

Estimates request complexity from cheap textual heuristics.

Factors (each a value in [0, 1] times its configured weight):
- prompt length, bucketed by character count
- multi-step / analytical keyword occurrences
- context depth (messages beyond the first)
- requested maximum output size
- structured output requirement

Every factor is non-decreasing in the input it measures, so appending text
or requiring structured output can never lower the resulting tier.
"""

import re
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Dict, Optional, Pattern, Sequence

from ..core.config import ClassifierConfig
from ..core.models import ComplexityTier, RequestContext


@dataclass
class ComplexityAssessment:
    """Classifier output with the reasoning behind it."""
    tier: ComplexityTier
    score: float
    factors: Dict[str, float] = field(default_factory=dict)
    estimated_tokens: int = 0
    overridden: bool = False

    @property
    def reasoning(self) -> str:
        if self.overridden:
            return f"caller requested {self.tier.value}"
        parts = [f"{name}={points:.2f}" for name, points in self.factors.items() if points > 0]
        return f"score {self.score:.2f} ({', '.join(parts) or 'no signals'})"


class ComplexityClassifier:
    """Pure function of RequestContext to ComplexityTier."""

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()
        self._keyword_pattern = self._compile(self.config.keywords)

    @staticmethod
    def _compile(keywords: Sequence[str]) -> Optional[Pattern]:
        if not keywords:
            return None
        # Leading boundary only: "steps" still counts as "step", so appending
        # characters can never remove a match
        alternatives = sorted((re.escape(k) for k in keywords), key=len, reverse=True)
        return re.compile(r"\b(?:" + "|".join(alternatives) + r")", re.IGNORECASE)

    def classify(self, ctx: RequestContext) -> ComplexityTier:
        return self.assess(ctx).tier

    def assess(self, ctx: RequestContext) -> ComplexityAssessment:
        """Score the request; an explicit complexity hint always wins."""
        text = ctx.prompt_text
        estimated_tokens = len(text) // 4

        if ctx.complexity_hint is not None:
            return ComplexityAssessment(
                tier=ctx.complexity_hint,
                score=0.0,
                estimated_tokens=estimated_tokens,
                overridden=True,
            )

        cfg = self.config
        factors = {
            "length": cfg.length_weight * self._bucket(len(text), cfg.length_thresholds, cfg.length_values),
            "keywords": cfg.keyword_weight * min(1.0, self._keyword_hits(text) * cfg.keyword_step),
            "context": cfg.context_weight * min(1.0, max(0, len(ctx.messages) - 1) * cfg.context_step),
            "output": cfg.output_weight * self._bucket(ctx.max_output_tokens, cfg.output_thresholds, cfg.output_values),
            "structured": cfg.structured_weight if ctx.wants_structured else 0.0,
        }
        score = sum(factors.values())

        return ComplexityAssessment(
            tier=self.tier_for_score(score),
            score=score,
            factors=factors,
            estimated_tokens=estimated_tokens,
        )

    def tier_for_score(self, score: float) -> ComplexityTier:
        if score <= self.config.low_threshold:
            return ComplexityTier.LOW
        if score <= self.config.medium_threshold:
            return ComplexityTier.MEDIUM
        return ComplexityTier.HIGH

    def _keyword_hits(self, text: str) -> int:
        if self._keyword_pattern is None:
            return 0
        return len(self._keyword_pattern.findall(text))

    @staticmethod
    def _bucket(value: int, thresholds: Sequence[int], values: Sequence[float]) -> float:
        # thresholds (50, 200, 500) -> <50: values[0], <200: values[1], ...
        return values[bisect_right(thresholds, value)]
