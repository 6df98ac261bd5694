"""
llmrelay - Complexity Classifier Tests

Verifies:
- Simple, multi-step and structured prompts land in the expected tiers
- An explicit complexity hint always wins
- Monotonicity: more text or a structured-output requirement never lowers
  the tier
"""

import pytest

from llmrelay.core.config import ClassifierConfig, ConfigError
from llmrelay.core.models import ComplexityTier, Message, RequestContext
from llmrelay.routing.classifier import ComplexityClassifier


def ctx_for(prompt: str, **kwargs) -> RequestContext:
    return RequestContext.create(prompt=prompt, **kwargs)


@pytest.fixture
def classifier():
    return ComplexityClassifier()


LONG_PLAN = (
    "First, compare the three vendors on price and support. Then evaluate the "
    "tradeoff between upfront cost and maintenance. Next, plan a migration "
    "schedule with multiple phases, and finally organize a budget with the "
    "pros and cons of each option. Explain why each step matters and analyze "
    "the risks depending on team size. "
) * 2


class TestTierAssignment:
    """Tier boundaries on representative prompts."""

    def test_short_question_is_low(self, classifier):
        """A one-line factual question is LOW."""
        assert classifier.classify(ctx_for("What is the capital of France?")) == ComplexityTier.LOW

    def test_multi_step_prompt_is_medium(self, classifier):
        """A short prompt with several planning keywords is MEDIUM."""
        ctx = ctx_for("First compare the options, then evaluate the budget.")
        assessment = classifier.assess(ctx)

        assert assessment.tier == ComplexityTier.MEDIUM
        assert assessment.factors["keywords"] > 0

    def test_long_structured_plan_is_high(self, classifier):
        """Long multi-step prompt needing JSON and a large answer is HIGH."""
        ctx = ctx_for(LONG_PLAN, response_format="structured", max_output_tokens=4096)
        assert classifier.classify(ctx) == ComplexityTier.HIGH

    def test_tier_for_score_boundaries(self, classifier):
        """Thresholds are inclusive upper bounds."""
        assert classifier.tier_for_score(0.0) == ComplexityTier.LOW
        assert classifier.tier_for_score(0.3) == ComplexityTier.LOW
        assert classifier.tier_for_score(0.31) == ComplexityTier.MEDIUM
        assert classifier.tier_for_score(0.7) == ComplexityTier.MEDIUM
        assert classifier.tier_for_score(0.71) == ComplexityTier.HIGH

    def test_keywords_are_case_insensitive(self, classifier):
        """Keyword matching ignores case."""
        lower = classifier.assess(ctx_for("compare then evaluate"))
        upper = classifier.assess(ctx_for("COMPARE THEN EVALUATE"))
        assert lower.factors["keywords"] == upper.factors["keywords"] > 0

    def test_context_depth_raises_score(self, classifier):
        """Earlier conversation turns add to the score."""
        single = ctx_for("Summarise our discussion.")
        multi = RequestContext.create(messages=[
            Message.system("You are concise."),
            Message.user("We talked about caching."),
            {"role": "assistant", "content": "Yes, and eviction."},
            Message.user("Summarise our discussion."),
        ])

        assert classifier.assess(multi).score > classifier.assess(single).score

    def test_estimated_tokens(self, classifier):
        """Token estimate is characters / 4."""
        assessment = classifier.assess(ctx_for("x" * 400))
        assert assessment.estimated_tokens == 100


class TestComplexityHint:
    """Caller-provided tier."""

    def test_hint_overrides_heuristics(self, classifier):
        """A LOW hint wins over a prompt that would score HIGH."""
        ctx = ctx_for(LONG_PLAN, response_format="structured", max_output_tokens=4096, complexity_hint="low")
        assessment = classifier.assess(ctx)

        assert assessment.tier == ComplexityTier.LOW
        assert assessment.overridden is True
        assert "caller requested low" in assessment.reasoning

    def test_hint_can_raise_tier(self, classifier):
        """A HIGH hint on a trivial prompt is honoured."""
        assert classifier.classify(ctx_for("hi", complexity_hint=ComplexityTier.HIGH)) == ComplexityTier.HIGH

    def test_invalid_hint_is_rejected(self):
        """Unknown tier names fail at context creation."""
        with pytest.raises(ValueError):
            ctx_for("hi", complexity_hint="extreme")


class TestMonotonicity:
    """Adding signal never lowers the tier."""

    PROMPTS = [
        "hi",
        "What is the capital of France?",
        "First compare the options, then evaluate the budget.",
        "Plan the step",
        "x" * 199,
        LONG_PLAN[:300],
    ]

    SUFFIXES = [
        "s",
        " and more",
        " then finally analyze several tradeoffs",
        "y" * 400,
        LONG_PLAN,
    ]

    @pytest.mark.parametrize("prompt", PROMPTS)
    @pytest.mark.parametrize("suffix", SUFFIXES)
    def test_appending_text_never_lowers_tier(self, classifier, prompt, suffix):
        """Longer prompt, same or higher tier."""
        base = classifier.assess(ctx_for(prompt))
        extended = classifier.assess(ctx_for(prompt + suffix))

        assert extended.score >= base.score
        assert extended.tier.rank >= base.tier.rank

    @pytest.mark.parametrize("prompt", PROMPTS)
    def test_structured_output_never_lowers_tier(self, classifier, prompt):
        """Requiring structured output keeps or raises the tier."""
        text = classifier.classify(ctx_for(prompt))
        structured = classifier.classify(ctx_for(prompt, response_format="structured"))
        assert structured.rank >= text.rank

    @pytest.mark.parametrize("tokens", [1, 256, 511, 512, 1999, 2000, 4000, 8000])
    def test_larger_output_never_lowers_tier(self, classifier, tokens):
        """Asking for more output keeps or raises the score."""
        small = classifier.assess(ctx_for("Write a report", max_output_tokens=tokens))
        large = classifier.assess(ctx_for("Write a report", max_output_tokens=tokens * 2))
        assert large.score >= small.score


class TestClassifierConfig:
    """Thresholds are policy, not contract."""

    def test_custom_thresholds(self):
        """Lowering the thresholds moves the same prompt up."""
        strict = ComplexityClassifier(ClassifierConfig(low_threshold=0.01, medium_threshold=0.05))
        assert strict.classify(ctx_for("What is the capital of France?")) == ComplexityTier.HIGH

    def test_mismatched_buckets_rejected(self):
        """Each threshold list needs one more value than thresholds."""
        with pytest.raises(ConfigError):
            ClassifierConfig(length_thresholds=(10, 20), length_values=(0.1, 0.2)).validate()
