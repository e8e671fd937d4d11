"""Tests for RoutingEngine rule ordering and score banding."""

from __future__ import annotations

import pytest

from helix_router.routing.complexity import (
    AccuracyRequirement,
    ComplexityEvaluation,
    ConstraintLevel,
    ReasoningDepth,
    TaskType,
    TokenSize,
)
from helix_router.routing.engine import (
    DEFAULT_RULES,
    RoutingEngine,
    RoutingRule,
    RoutingThresholds,
)
from helix_router.routing.providers import ProviderConfig, ProviderRegistry, RouteTier


def _ev(
    score: int,
    task_type: TaskType = TaskType.OTHER,
    confidence: float = 0.9,
    size: TokenSize = TokenSize.MEDIUM,
) -> ComplexityEvaluation:
    return ComplexityEvaluation(
        reasoning_depth=ReasoningDepth.MEDIUM,
        task_type=task_type,
        constraint_level=ConstraintLevel.MEDIUM,
        required_accuracy=AccuracyRequirement.MEDIUM,
        estimated_token_size=size,
        complexity_score=score,
        confidence=confidence,
    )


@pytest.fixture
def engine() -> RoutingEngine:
    return RoutingEngine()


class TestRuleOrder:
    @pytest.mark.parametrize(
        ("evaluation", "tier", "rule"),
        [
            (_ev(10, size=TokenSize.VERY_LARGE), RouteTier.PRO, "very_large_tokens"),
            (_ev(95, confidence=0.4), RouteTier.MID, "low_confidence"),
            (_ev(95, confidence=0.65), RouteTier.MID, "extreme_score_marginal_confidence"),
            (_ev(60, TaskType.WRITING), RouteTier.MID, "mid_preferred_task"),
            (_ev(69, TaskType.VISUALIZATION), RouteTier.MID, "mid_preferred_task"),
            (_ev(20, TaskType.SUMMARIZATION), RouteTier.MID, "mid_preferred_task"),
            (_ev(65, TaskType.CODING), RouteTier.MID, "coding_below_ceiling"),
            (_ev(80, TaskType.ARCHITECTURE_DESIGN), RouteTier.PRO, "pro_preferred_task"),
            (_ev(65, TaskType.MATHEMATICAL_REASONING), RouteTier.PRO, "pro_preferred_task"),
            (_ev(80), RouteTier.PRO, "score_band"),
            (_ev(75), RouteTier.PRO, "score_band"),
            (_ev(50), RouteTier.MID, "score_band"),
            (_ev(35), RouteTier.MID, "score_band"),
            (_ev(34), RouteTier.LOW, "score_band"),
            (_ev(72, TaskType.CODING), RouteTier.MID, "score_band"),
            (_ev(64, TaskType.MULTI_STEP_PLANNING), RouteTier.MID, "score_band"),
        ],
    )
    def test_first_matching_rule_wins(self, engine, evaluation, tier, rule):
        decision = engine.decide(evaluation, cached=False)
        assert decision.tier == tier
        assert decision.rule == rule

    def test_very_large_beats_low_confidence(self, engine):
        decision = engine.decide(_ev(10, confidence=0.1, size=TokenSize.VERY_LARGE), cached=False)
        assert decision.tier == RouteTier.PRO

    def test_confidence_boundary_is_exclusive(self, engine):
        assert engine.decide(_ev(20, confidence=0.6), cached=False).tier == RouteTier.LOW
        assert engine.decide(_ev(20, confidence=0.59), cached=False).tier == RouteTier.MID

    def test_uncertain_requests_never_go_low(self, engine):
        for score in range(0, 101, 5):
            for confidence in (0.0, 0.3, 0.59):
                assert engine.decide(_ev(score, confidence=confidence), cached=False).tier != RouteTier.LOW

    def test_decision_is_deterministic(self, engine):
        ev = _ev(50, TaskType.CODING)
        assert engine.decide(ev, cached=True) == engine.decide(ev, cached=True)


class TestDecision:
    def test_reasoning_and_fields(self, engine):
        decision = engine.decide(_ev(30), cached=True)
        assert decision.reasoning == "Score 30 < 35 -> LOW"
        assert decision.cached is True
        assert decision.score == 30
        assert decision.to_dict()["taskType"] == "other"

    def test_low_confidence_reasoning(self, engine):
        decision = engine.decide(_ev(80, confidence=0.4), cached=False)
        assert decision.reasoning == "Low confidence (0.40) defaults to MID"


class TestThresholds:
    def test_custom_thresholds(self):
        engine = RoutingEngine(RoutingThresholds(pro_threshold=60, mid_threshold=20))
        assert engine.decide(_ev(60), cached=False).tier == RouteTier.PRO
        assert engine.decide(_ev(20), cached=False).tier == RouteTier.MID
        assert engine.decide(_ev(19), cached=False).tier == RouteTier.LOW

    def test_mid_above_pro_rejected(self):
        with pytest.raises(ValueError):
            RoutingThresholds(pro_threshold=30, mid_threshold=40)

    def test_from_settings(self, settings):
        thresholds = RoutingThresholds.from_settings(settings)
        assert thresholds == RoutingThresholds(75, 35)


class TestRuleTable:
    def test_default_rule_names(self):
        assert [r.name for r in DEFAULT_RULES] == [
            "very_large_tokens",
            "low_confidence",
            "extreme_score_marginal_confidence",
            "mid_preferred_task",
            "coding_below_ceiling",
            "pro_preferred_task",
            "score_band",
        ]

    def test_table_without_catch_all_raises(self):
        engine = RoutingEngine(rules=[RoutingRule("never", lambda ev, th: None)])
        with pytest.raises(ValueError, match="No routing rule matched"):
            engine.decide(_ev(50), cached=False)

    def test_empty_table_rejected(self):
        with pytest.raises(ValueError):
            RoutingEngine(rules=[])

    def test_describe(self, engine):
        registry = ProviderRegistry(
            {
                tier: ProviderConfig(base_url="http://x/v1", api_key="", model_id=f"m-{tier.value}")
                for tier in RouteTier
            }
        )
        description = engine.describe(registry)
        assert description["thresholds"] == {"proThreshold": 75, "midThreshold": 35}
        assert description["providers"] == ["PRO: m-pro", "MID: m-mid", "LOW: m-low"]
