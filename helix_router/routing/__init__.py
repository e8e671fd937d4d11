"""Complexity-based routing of chat completions across backend tiers.

Requests are sent to one of three OpenAI-compatible backends
(PRO/MID/LOW) based on a structured complexity evaluation produced by the
LOW-tier model:
- Complexity evaluation with a bounded TTL cache
- Ordered, first-match-wins routing rules
- Buffered and streamed forwarding with a single MID fallback
- Routing statistics and an append-only JSONL routing log
"""

from __future__ import annotations

from helix_router.routing.cache import EvaluationCache
from helix_router.routing.complexity import (
    DEFAULT_EVALUATION,
    ComplexityEvaluation,
    ComplexityEvaluator,
    EvaluationResult,
    TaskType,
)
from helix_router.routing.engine import RoutingDecision, RoutingEngine, RoutingThresholds
from helix_router.routing.forwarding import ForwardingClient, ForwardingError
from helix_router.routing.providers import ProviderConfig, ProviderRegistry, RouteTier
from helix_router.routing.proxy import HelixProxy, RouterError
from helix_router.routing.stats import RoutingLogEntry, RoutingStats, TelemetryRecorder

__all__ = [
    "DEFAULT_EVALUATION",
    "ComplexityEvaluation",
    "ComplexityEvaluator",
    "EvaluationCache",
    "EvaluationResult",
    "ForwardingClient",
    "ForwardingError",
    "HelixProxy",
    "ProviderConfig",
    "ProviderRegistry",
    "RouteTier",
    "RouterError",
    "RoutingDecision",
    "RoutingEngine",
    "RoutingLogEntry",
    "RoutingStats",
    "RoutingThresholds",
    "TaskType",
    "TelemetryRecorder",
]
