"""Routing engine - maps a complexity evaluation to a route tier.

Routing is a pure, total function over an ordered rule table. Rules are
checked in priority order and the first match decides:

1. very_large token size                       -> PRO
2. confidence < 0.6                            -> MID
3. score > 90 and confidence < 0.7             -> MID
4. visualization/writing/summarization, < 70   -> MID
5. coding, < 70                                -> MID
6. architecture/maths/planning, >= 65          -> PRO
7. score banding: >= pro_threshold -> PRO, >= mid_threshold -> MID, else LOW

The banding rule always matches, so decide() returns exactly one tier for
every evaluation. Uncertain evaluations land on MID, never LOW.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import structlog

from helix_router.routing.complexity import ComplexityEvaluation, TaskType, TokenSize
from helix_router.routing.providers import RouteTier

if TYPE_CHECKING:
    from helix_router.config import Settings
    from helix_router.routing.providers import ProviderRegistry

log = structlog.get_logger(__name__)

LOW_CONFIDENCE = 0.6
EXTREME_SCORE = 90
EXTREME_SCORE_MIN_CONFIDENCE = 0.7
MID_PREFERRED_CEILING = 70
PRO_PREFERRED_FLOOR = 65

MID_PREFERRED_TASKS = frozenset(
    {TaskType.VISUALIZATION, TaskType.WRITING, TaskType.SUMMARIZATION}
)
PRO_PREFERRED_TASKS = frozenset(
    {
        TaskType.ARCHITECTURE_DESIGN,
        TaskType.MATHEMATICAL_REASONING,
        TaskType.MULTI_STEP_PLANNING,
    }
)


@dataclass(frozen=True)
class RoutingThresholds:
    """Score bands for the default rule.

    Attributes:
        pro_threshold: Scores at or above this go to PRO (default 75)
        mid_threshold: Scores at or above this go to MID (default 35)
    """

    pro_threshold: int = 75
    mid_threshold: int = 35

    def __post_init__(self) -> None:
        if self.mid_threshold > self.pro_threshold:
            raise ValueError("mid_threshold must not exceed pro_threshold")

    @classmethod
    def from_settings(cls, settings: Settings) -> RoutingThresholds:
        return cls(pro_threshold=settings.pro_threshold, mid_threshold=settings.mid_threshold)


@dataclass(frozen=True)
class RoutingDecision:
    """Tier chosen for one request, with the rule trace that chose it.

    Attributes:
        tier: Selected tier
        score: complexity_score that drove the decision
        task_type: Evaluated task type
        confidence: Evaluator confidence
        reasoning: Human-readable trace naming the rule that fired
        rule: Name of the rule that fired
        cached: Whether the evaluation came from the cache
    """

    tier: RouteTier
    score: int
    task_type: TaskType
    confidence: float
    reasoning: str
    rule: str
    cached: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier": self.tier.value,
            "score": self.score,
            "taskType": self.task_type.value,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "rule": self.rule,
            "cached": self.cached,
        }


# A rule returns (tier, reasoning) when it matches, None otherwise.
RuleOutcome = tuple[RouteTier, str] | None


@dataclass(frozen=True)
class RoutingRule:
    name: str
    apply: Callable[[ComplexityEvaluation, RoutingThresholds], RuleOutcome]


def _very_large_tokens(ev: ComplexityEvaluation, _: RoutingThresholds) -> RuleOutcome:
    if ev.estimated_token_size == TokenSize.VERY_LARGE:
        return RouteTier.PRO, "Very large token size forces PRO"
    return None


def _low_confidence(ev: ComplexityEvaluation, _: RoutingThresholds) -> RuleOutcome:
    if ev.confidence < LOW_CONFIDENCE:
        return RouteTier.MID, f"Low confidence ({ev.confidence:.2f}) defaults to MID"
    return None


def _extreme_score_marginal_confidence(
    ev: ComplexityEvaluation, _: RoutingThresholds
) -> RuleOutcome:
    if ev.complexity_score > EXTREME_SCORE and ev.confidence < EXTREME_SCORE_MIN_CONFIDENCE:
        return (
            RouteTier.MID,
            f"High score ({ev.complexity_score}) but low confidence "
            f"({ev.confidence:.2f}) -> MID",
        )
    return None


def _mid_preferred_task(ev: ComplexityEvaluation, _: RoutingThresholds) -> RuleOutcome:
    if ev.task_type in MID_PREFERRED_TASKS and ev.complexity_score < MID_PREFERRED_CEILING:
        return (
            RouteTier.MID,
            f"{ev.task_type.value} task prefers MID (score: {ev.complexity_score})",
        )
    return None


def _coding_below_ceiling(ev: ComplexityEvaluation, _: RoutingThresholds) -> RuleOutcome:
    if ev.task_type == TaskType.CODING and ev.complexity_score < MID_PREFERRED_CEILING:
        return RouteTier.MID, f"Coding task with score {ev.complexity_score} stays in MID"
    return None


def _pro_preferred_task(ev: ComplexityEvaluation, _: RoutingThresholds) -> RuleOutcome:
    if ev.task_type in PRO_PREFERRED_TASKS and ev.complexity_score >= PRO_PREFERRED_FLOOR:
        return (
            RouteTier.PRO,
            f"{ev.task_type.value} with score {ev.complexity_score} -> PRO",
        )
    return None


def _score_band(ev: ComplexityEvaluation, thresholds: RoutingThresholds) -> RuleOutcome:
    score = ev.complexity_score
    if score >= thresholds.pro_threshold:
        return RouteTier.PRO, f"Score {score} >= {thresholds.pro_threshold} -> PRO"
    if score >= thresholds.mid_threshold:
        return RouteTier.MID, f"Score {score} >= {thresholds.mid_threshold} -> MID"
    return RouteTier.LOW, f"Score {score} < {thresholds.mid_threshold} -> LOW"


DEFAULT_RULES: tuple[RoutingRule, ...] = (
    RoutingRule("very_large_tokens", _very_large_tokens),
    RoutingRule("low_confidence", _low_confidence),
    RoutingRule("extreme_score_marginal_confidence", _extreme_score_marginal_confidence),
    RoutingRule("mid_preferred_task", _mid_preferred_task),
    RoutingRule("coding_below_ceiling", _coding_below_ceiling),
    RoutingRule("pro_preferred_task", _pro_preferred_task),
    RoutingRule("score_band", _score_band),
)


class RoutingEngine:
    """First-match-wins evaluator over an ordered rule table."""

    def __init__(
        self,
        thresholds: RoutingThresholds | None = None,
        rules: Sequence[RoutingRule] = DEFAULT_RULES,
    ) -> None:
        if not rules:
            raise ValueError("RoutingEngine requires at least one rule")

        self._thresholds = thresholds or RoutingThresholds()
        self._rules = tuple(rules)

        log.info(
            "routing_engine.initialized",
            pro_threshold=self._thresholds.pro_threshold,
            mid_threshold=self._thresholds.mid_threshold,
            rules=[rule.name for rule in self._rules],
        )

    @property
    def thresholds(self) -> RoutingThresholds:
        return self._thresholds

    def decide(self, evaluation: ComplexityEvaluation, cached: bool) -> RoutingDecision:
        """Select a tier for an evaluation.

        Args:
            evaluation: Validated complexity evaluation
            cached: Whether the evaluation came from the cache

        Returns:
            RoutingDecision from the first rule that matches
        """
        for rule in self._rules:
            outcome = rule.apply(evaluation, self._thresholds)
            if outcome is None:
                continue

            tier, reasoning = outcome
            log.info(
                "routing_engine.decided",
                rule=rule.name,
                tier=tier.value,
                score=evaluation.complexity_score,
                task_type=evaluation.task_type.value,
                confidence=evaluation.confidence,
                reasoning=reasoning,
            )
            return RoutingDecision(
                tier=tier,
                score=evaluation.complexity_score,
                task_type=evaluation.task_type,
                confidence=evaluation.confidence,
                reasoning=reasoning,
                rule=rule.name,
                cached=cached,
            )

        # Only reachable with a custom rule table lacking a catch-all
        raise ValueError("No routing rule matched; rule table must end with a catch-all")

    def describe(self, providers: ProviderRegistry) -> dict[str, Any]:
        """Thresholds and provider summary for config/stats views."""
        return {
            "thresholds": {
                "proThreshold": self._thresholds.pro_threshold,
                "midThreshold": self._thresholds.mid_threshold,
            },
            "providers": providers.summary(),
            "rules": [rule.name for rule in self._rules],
        }
