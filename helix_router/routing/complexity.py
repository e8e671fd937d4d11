"""Cognitive complexity evaluation for tier routing.

The ComplexityEvaluator asks the LOW-tier backend (the auxiliary model) to
classify the latest user request along five categorical dimensions:

- reasoning_depth: low / medium / high
- task_type: one of ten task categories
- constraint_level: low / medium / high
- required_accuracy: low / medium / high
- estimated_token_size: small / medium / large / very_large

The auxiliary model also reports a numeric score, but it is never used.
complexity_score is always recomputed from the (validated) categorical
fields with fixed lookup tables, so the score is reproducible:

    score = depth(10-30) + task(5-30) + constraint(5-20) + accuracy(5-20), max 100

Evaluations are memoised by a hash of the user turns. Any failure (HTTP
error, timeout, unparseable reply) yields DEFAULT_EVALUATION instead of an
exception.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import math
import re
import time
from collections.abc import Sequence
from dataclasses import asdict, dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any

import httpx
import structlog

if TYPE_CHECKING:
    from helix_router.routing.cache import EvaluationCache
    from helix_router.routing.providers import ProviderConfig

log = structlog.get_logger(__name__)


class ReasoningDepth(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TaskType(StrEnum):
    CLASSIFICATION = "classification"
    EXTRACTION = "extraction"
    SUMMARIZATION = "summarization"
    WRITING = "writing"
    CODING = "coding"
    ARCHITECTURE_DESIGN = "architecture_design"
    MATHEMATICAL_REASONING = "mathematical_reasoning"
    VISUALIZATION = "visualization"
    MULTI_STEP_PLANNING = "multi_step_planning"
    OTHER = "other"


class ConstraintLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class AccuracyRequirement(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class TokenSize(StrEnum):
    SMALL = "small"  # < 500 tokens
    MEDIUM = "medium"  # 500-2000
    LARGE = "large"  # 2000-8000
    VERY_LARGE = "very_large"  # > 8000


# ---------------------------------------------------------------------------
# Score tables
# ---------------------------------------------------------------------------

REASONING_DEPTH_SCORES: dict[ReasoningDepth, int] = {
    ReasoningDepth.LOW: 10,
    ReasoningDepth.MEDIUM: 20,
    ReasoningDepth.HIGH: 30,
}

TASK_TYPE_SCORES: dict[TaskType, int] = {
    TaskType.CLASSIFICATION: 5,
    TaskType.EXTRACTION: 5,
    TaskType.SUMMARIZATION: 10,
    TaskType.WRITING: 15,
    TaskType.CODING: 20,
    TaskType.VISUALIZATION: 15,
    TaskType.ARCHITECTURE_DESIGN: 30,
    TaskType.MATHEMATICAL_REASONING: 30,
    TaskType.MULTI_STEP_PLANNING: 25,
    TaskType.OTHER: 15,
}

CONSTRAINT_LEVEL_SCORES: dict[ConstraintLevel, int] = {
    ConstraintLevel.LOW: 5,
    ConstraintLevel.MEDIUM: 10,
    ConstraintLevel.HIGH: 20,
}

ACCURACY_SCORES: dict[AccuracyRequirement, int] = {
    AccuracyRequirement.LOW: 5,
    AccuracyRequirement.MEDIUM: 10,
    AccuracyRequirement.HIGH: 20,
}

MAX_SCORE = 100


def compute_complexity_score(
    reasoning_depth: ReasoningDepth,
    task_type: TaskType,
    constraint_level: ConstraintLevel,
    required_accuracy: AccuracyRequirement,
) -> int:
    """Sum the four lookup tables, clamped to MAX_SCORE."""
    total = (
        REASONING_DEPTH_SCORES[reasoning_depth]
        + TASK_TYPE_SCORES[task_type]
        + CONSTRAINT_LEVEL_SCORES[constraint_level]
        + ACCURACY_SCORES[required_accuracy]
    )
    return min(MAX_SCORE, total)


@dataclass(frozen=True)
class ComplexityEvaluation:
    """Structured complexity judgment for one request.

    Attributes:
        reasoning_depth: How much multi-step reasoning the request needs
        task_type: Task category
        constraint_level: How constrained the requested output is
        required_accuracy: Cost of a wrong answer
        estimated_token_size: Expected size of the exchange
        complexity_score: 0-100, always equal to compute_complexity_score()
            of the categorical fields
        confidence: Evaluator's confidence, 0.0-1.0
    """

    reasoning_depth: ReasoningDepth
    task_type: TaskType
    constraint_level: ConstraintLevel
    required_accuracy: AccuracyRequirement
    estimated_token_size: TokenSize
    complexity_score: int
    confidence: float

    def __post_init__(self) -> None:
        if not 0 <= self.complexity_score <= MAX_SCORE:
            raise ValueError(f"complexity_score must be 0-100, got {self.complexity_score}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"confidence must be 0.0-1.0, got {self.confidence}")

    @classmethod
    def from_dimensions(
        cls,
        reasoning_depth: ReasoningDepth,
        task_type: TaskType,
        constraint_level: ConstraintLevel,
        required_accuracy: AccuracyRequirement,
        estimated_token_size: TokenSize,
        confidence: float,
    ) -> ComplexityEvaluation:
        """Build an evaluation whose score is derived from its dimensions."""
        return cls(
            reasoning_depth=reasoning_depth,
            task_type=task_type,
            constraint_level=constraint_level,
            required_accuracy=required_accuracy,
            estimated_token_size=estimated_token_size,
            complexity_score=compute_complexity_score(
                reasoning_depth, task_type, constraint_level, required_accuracy
            ),
            confidence=confidence,
        )

    def to_dict(self) -> dict[str, Any]:
        return {key: str(value) if isinstance(value, StrEnum) else value for key, value in asdict(self).items()}


# Conservative MID-leaning evaluation used whenever evaluation fails.
# The score is a fixed 50, not the table sum of its dimensions (55); it is the
# one evaluation exempt from recomputation.
DEFAULT_EVALUATION = ComplexityEvaluation(
    reasoning_depth=ReasoningDepth.MEDIUM,
    task_type=TaskType.OTHER,
    constraint_level=ConstraintLevel.MEDIUM,
    required_accuracy=AccuracyRequirement.MEDIUM,
    estimated_token_size=TokenSize.MEDIUM,
    complexity_score=50,
    confidence=0.6,
)

# Used when the reply omits confidence or reports a non-number.
MISSING_CONFIDENCE = 0.5


# ---------------------------------------------------------------------------
# Reply parsing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ParsedEvaluation:
    """Successfully parsed auxiliary reply.

    corrected_fields names every dimension that was missing or outside its
    enumeration and was replaced by the neutral default.
    """

    evaluation: ComplexityEvaluation
    corrected_fields: tuple[str, ...] = ()


@dataclass(frozen=True)
class ParseError:
    """Auxiliary reply that could not be turned into an evaluation."""

    reason: str
    raw: str = ""


_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def _strip_code_fence(content: str) -> str:
    text = content.strip()
    if text.startswith("```"):
        text = _FENCE_OPEN.sub("", text)
        text = _FENCE_CLOSE.sub("", text)
    return text.strip()


def _coerce_enum(
    enum_cls: type[StrEnum],
    raw: dict[str, Any],
    name: str,
    default: StrEnum,
    corrected: list[str],
) -> Any:
    value = raw.get(name)
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            pass
    corrected.append(name)
    return default


def _coerce_confidence(value: Any, corrected: list[str]) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        corrected.append("confidence")
        return MISSING_CONFIDENCE
    try:
        number = float(value)
    except ValueError:
        corrected.append("confidence")
        return MISSING_CONFIDENCE
    if math.isnan(number):
        corrected.append("confidence")
        return MISSING_CONFIDENCE
    return max(0.0, min(1.0, number))


def parse_evaluation_reply(content: str | None) -> ParsedEvaluation | ParseError:
    """Validate the auxiliary model's JSON reply field by field.

    Tolerates a surrounding markdown code fence. Fields outside their closed
    enumeration fall back to "medium" (levels, token size) or "other" (task
    type) so one bad field does not discard the rest. The reported
    complexity_score is ignored and recomputed.
    """
    if not content or not content.strip():
        return ParseError(reason="empty_reply")

    text = _strip_code_fence(content)
    try:
        raw = json.loads(text)
    except json.JSONDecodeError as exc:
        return ParseError(reason=f"invalid_json: {exc.msg}", raw=text)

    if not isinstance(raw, dict):
        return ParseError(reason="reply_not_an_object", raw=text)

    corrected: list[str] = []
    evaluation = ComplexityEvaluation.from_dimensions(
        reasoning_depth=_coerce_enum(
            ReasoningDepth, raw, "reasoning_depth", ReasoningDepth.MEDIUM, corrected
        ),
        task_type=_coerce_enum(TaskType, raw, "task_type", TaskType.OTHER, corrected),
        constraint_level=_coerce_enum(
            ConstraintLevel, raw, "constraint_level", ConstraintLevel.MEDIUM, corrected
        ),
        required_accuracy=_coerce_enum(
            AccuracyRequirement, raw, "required_accuracy", AccuracyRequirement.MEDIUM, corrected
        ),
        estimated_token_size=_coerce_enum(
            TokenSize, raw, "estimated_token_size", TokenSize.MEDIUM, corrected
        ),
        confidence=_coerce_confidence(raw.get("confidence"), corrected),
    )
    return ParsedEvaluation(evaluation=evaluation, corrected_fields=tuple(corrected))


# ---------------------------------------------------------------------------
# Conversation helpers
# ---------------------------------------------------------------------------


def request_messages(request: dict[str, Any]) -> list[Any]:
    """The request's message list; anything other than a list reads as empty."""
    messages = request.get("messages")
    return messages if isinstance(messages, list) else []


def message_role(message: Any) -> str | None:
    """Role of a message, or None for anything that is not a message object."""
    if not isinstance(message, dict):
        return None
    role = message.get("role")
    return role if isinstance(role, str) else None


def message_text(message: Any) -> str:
    """Render message content as text; structured parts are JSON-encoded.

    Entries that are not message objects are rendered whole.
    """
    if not isinstance(message, dict):
        return message if isinstance(message, str) else json.dumps(message, ensure_ascii=False, default=str)
    content = message.get("content")
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False, default=str)


def content_hash(messages: Sequence[Any]) -> str:
    """Order-sensitive hash of all user turns, used as the cache key."""
    joined = "|".join(message_text(m) for m in messages if message_role(m) == "user")
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()[:16]


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------

COMPLEXITY_SYSTEM_PROMPT = """You are a Cognitive Complexity Evaluator.

Your job is NOT to solve the task.
Your job is to evaluate how cognitively complex the user's request is.

You must return ONLY valid JSON.
Do not include explanations.
Do not answer the question.
Do not include markdown.
Do not include extra text.

Evaluate the task across these dimensions:

1. reasoning_depth:
   - low: single-step answer, direct response
   - medium: structured response, some reasoning
   - high: multi-step reasoning, complex constraints, architecture-level thinking

2. task_type:
   - classification
   - extraction
   - summarization
   - writing
   - coding
   - architecture_design
   - mathematical_reasoning
   - visualization
   - multi_step_planning
   - other

3. constraint_level:
   - low
   - medium
   - high

4. required_accuracy:
   - low
   - medium
   - high

5. estimated_token_size:
   - small (<500)
   - medium (500-2000)
   - large (2000-8000)
   - very_large (>8000)

Then compute a complexity_score from 0 to 100 using:

Base Score =
Reasoning Depth (0-30) +
Task Type Weight (0-30) +
Constraint Level (0-20) +
Accuracy Requirement (0-20)

Be slightly conservative.
Prefer medium complexity instead of high if uncertain.

Return format:

{
  "reasoning_depth": "...",
  "task_type": "...",
  "constraint_level": "...",
  "required_accuracy": "...",
  "estimated_token_size": "...",
  "complexity_score": number,
  "confidence": 0.0-1.0
}"""

EVALUATION_TEMPERATURE = 0.1
EVALUATION_MAX_TOKENS = 200


class EvaluationError(Exception):
    """Auxiliary evaluation call failed or returned an unusable reply."""


@dataclass(frozen=True)
class EvaluationResult:
    """Outcome of ComplexityEvaluator.evaluate().

    Attributes:
        evaluation: The (possibly default) evaluation
        latency_ms: Auxiliary call time; 0 on cache hit
        cached: True if served from the cache
        content_hash: Cache key of the conversation's user turns
        error: Failure reason when DEFAULT_EVALUATION was substituted
    """

    evaluation: ComplexityEvaluation
    latency_ms: int
    cached: bool
    content_hash: str
    error: str | None = field(default=None)


class ComplexityEvaluator:
    """Evaluates request complexity with one call to the auxiliary model.

    The HTTP client is injected so the caller owns its lifecycle (and tests
    can swap in an httpx.MockTransport).
    """

    def __init__(
        self,
        provider: ProviderConfig,
        http_client: httpx.AsyncClient,
        cache: EvaluationCache | None = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        self._provider = provider
        self._http = http_client
        self._cache = cache
        self._timeout = timeout_seconds

        log.debug(
            "complexity_evaluator.initialized",
            model_id=provider.model_id,
            cache_enabled=cache is not None,
        )

    async def evaluate(self, messages: Sequence[dict[str, Any]]) -> EvaluationResult:
        """Evaluate a conversation. Never raises.

        Args:
            messages: Chat messages in OpenAI format

        Returns:
            EvaluationResult with the evaluation, latency and cache flag
        """
        key = content_hash(messages)

        if self._cache is not None:
            cached = await self._cache.get(key)
            if cached is not None:
                log.info(
                    "complexity_evaluator.cache_hit",
                    content_hash=key,
                    score=cached.complexity_score,
                )
                return EvaluationResult(
                    evaluation=cached, latency_ms=0, cached=True, content_hash=key
                )

        started = time.perf_counter()
        try:
            reply = await asyncio.wait_for(
                self._call_auxiliary(build_evaluation_prompt(messages)),
                timeout=self._timeout,
            )
            parsed = parse_evaluation_reply(reply)
            if isinstance(parsed, ParseError):
                raise EvaluationError(parsed.reason)
        except Exception as exc:
            latency_ms = _elapsed_ms(started)
            reason = str(exc) or type(exc).__name__
            log.warning(
                "complexity_evaluator.failed",
                content_hash=key,
                error_type=type(exc).__name__,
                error=reason,
                latency_ms=latency_ms,
            )
            return EvaluationResult(
                evaluation=DEFAULT_EVALUATION,
                latency_ms=latency_ms,
                cached=False,
                content_hash=key,
                error=reason,
            )

        latency_ms = _elapsed_ms(started)
        evaluation = parsed.evaluation

        if parsed.corrected_fields:
            log.warning(
                "complexity_evaluator.fields_corrected",
                content_hash=key,
                fields=list(parsed.corrected_fields),
            )

        if self._cache is not None:
            await self._cache.set(key, evaluation)

        log.info(
            "complexity_evaluator.evaluated",
            content_hash=key,
            score=evaluation.complexity_score,
            task_type=evaluation.task_type.value,
            confidence=round(evaluation.confidence, 2),
            latency_ms=latency_ms,
        )

        return EvaluationResult(
            evaluation=evaluation, latency_ms=latency_ms, cached=False, content_hash=key
        )

    async def _call_auxiliary(self, prompt: str) -> str:
        payload = {
            "model": self._provider.model_id,
            "messages": [
                {"role": "system", "content": COMPLEXITY_SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            "temperature": EVALUATION_TEMPERATURE,
            "max_tokens": EVALUATION_MAX_TOKENS,
        }

        response = await self._http.post(
            self._provider.completions_url,
            json=payload,
            headers=self._provider.auth_headers(),
            timeout=self._timeout,
        )
        if response.is_error:
            raise EvaluationError(f"auxiliary model returned HTTP {response.status_code}")

        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise EvaluationError("auxiliary reply has no message content") from exc

        if not isinstance(content, str) or not content.strip():
            raise EvaluationError("empty reply from auxiliary model")
        return content


def build_evaluation_prompt(messages: Sequence[dict[str, Any]]) -> str:
    """Render the conversation for the evaluator.

    Everything before the final message is shown as context; the most recent
    user turn is the evaluation target.
    """
    last_user = next((m for m in reversed(messages) if message_role(m) == "user"), None)
    target = message_text(last_user) if last_user is not None else ""
    context = messages[:-1]

    if context:
        context_str = "\n".join(f"{message_role(m) or 'user'}: {message_text(m)}" for m in context)
        return (
            "Evaluate the cognitive complexity of the following conversation:\n\n"
            f"Conversation:\n{context_str}\n\n"
            f"Latest User Request:\n{target}"
        )

    return f"Evaluate the cognitive complexity of the following user request:\n\n{target}"


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
