"""Per-request routing pipeline.

HelixProxy ties the pieces together for one chat completion:

    evaluate -> decide -> forward -> record

Fallback policy: if anything between evaluation and the backend response
fails, the original request is forwarded once more to the MID tier. There
is no further retry; a second failure surfaces as RouterError. A stream
that fails after chunks have reached the caller is not retried (that would
duplicate output); the caller gets one error event and the stream ends.
"""

from __future__ import annotations

import json
import random
import string
import time
from collections.abc import AsyncIterator
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

from helix_router.routing.cache import EvaluationCache
from helix_router.routing.complexity import (
    DEFAULT_EVALUATION,
    ComplexityEvaluator,
    EvaluationResult,
    content_hash,
    request_messages,
)
from helix_router.routing.engine import RoutingEngine, RoutingThresholds
from helix_router.routing.forwarding import (
    ForwardingClient,
    StreamInterruptedError,
    StreamUsage,
    estimate_tokens,
)
from helix_router.routing.providers import ProviderRegistry, RouteTier
from helix_router.routing.stats import (
    RoutingLogEntry,
    RoutingLogWriter,
    RoutingStats,
    TelemetryRecorder,
)
from helix_router.telemetry.logging import bind_request_context, bind_tier_context

if TYPE_CHECKING:
    import httpx

    from helix_router.config import Settings

log = structlog.get_logger(__name__)

FALLBACK_TIER = RouteTier.MID

_BASE36 = string.digits + string.ascii_lowercase


class RouterError(Exception):
    """Request could not be served, even by the fallback tier."""


def generate_request_id() -> str:
    """Return an id of the form hr_<epoch-ms>_<9 base36 chars>."""
    suffix = "".join(random.choices(_BASE36, k=9))
    return f"hr_{int(time.time() * 1000)}_{suffix}"


def error_event(request_id: str, message: str) -> dict[str, Any]:
    """Terminal event sent when a stream fails after output has started."""
    return {"id": request_id, "object": "error", "error": {"message": message}}


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


class HelixProxy:
    """Routes chat completions across the PRO/MID/LOW backends.

    One instance serves all concurrent requests. Its shared state (the
    evaluation cache and the stats aggregate) is internally synchronised.
    """

    def __init__(
        self,
        providers: ProviderRegistry,
        evaluator: ComplexityEvaluator,
        engine: RoutingEngine,
        forwarder: ForwardingClient,
        telemetry: TelemetryRecorder,
        namespace: str = "helix-router",
    ) -> None:
        self._providers = providers
        self._evaluator = evaluator
        self._engine = engine
        self._forwarder = forwarder
        self._telemetry = telemetry
        self._namespace = namespace

    @classmethod
    def from_settings(cls, settings: Settings, http_client: httpx.AsyncClient) -> HelixProxy:
        """Wire a proxy from settings around a caller-owned HTTP client."""
        providers = ProviderRegistry.from_settings(settings)

        cache = None
        if settings.cache_enabled:
            cache = EvaluationCache(
                ttl_seconds=settings.cache_ttl_seconds,
                max_entries=settings.cache_max_entries,
            )

        evaluator = ComplexityEvaluator(
            provider=providers.get(RouteTier.LOW),
            http_client=http_client,
            cache=cache,
            timeout_seconds=settings.evaluator_timeout_seconds,
        )
        forwarder = ForwardingClient(
            providers=providers,
            http_client=http_client,
            namespace=settings.model_namespace,
            timeout_seconds=settings.backend_timeout_seconds,
        )
        telemetry = TelemetryRecorder(
            stats=RoutingStats(),
            writer=RoutingLogWriter(
                settings.routing_log_path,
                write_timeout_seconds=settings.log_write_timeout_seconds,
            ),
            enabled=settings.telemetry_enabled,
        )

        return cls(
            providers=providers,
            evaluator=evaluator,
            engine=RoutingEngine(RoutingThresholds.from_settings(settings)),
            forwarder=forwarder,
            telemetry=telemetry,
            namespace=settings.model_namespace,
        )

    @property
    def providers(self) -> ProviderRegistry:
        return self._providers

    @property
    def namespace(self) -> str:
        return self._namespace

    # ------------------------------------------------------------------ #
    # Non-streaming
    # ------------------------------------------------------------------ #

    async def handle_completion(
        self, request: dict[str, Any], request_id: str | None = None
    ) -> dict[str, Any]:
        """Route and serve a non-streaming chat completion.

        Args:
            request: OpenAI-format request body
            request_id: Caller-supplied id; generated when omitted

        Returns:
            Backend response body with ``model`` set to "<namespace>/auto"

        Raises:
            RouterError: Both the routed tier and the MID fallback failed
        """
        request_id = request_id or generate_request_id()
        bind_request_context(request_id)
        started = time.perf_counter()
        messages = request_messages(request)

        evaluation: EvaluationResult | None = None
        fallback = False
        try:
            evaluation = await self._evaluator.evaluate(messages)
            decision = self._engine.decide(evaluation.evaluation, evaluation.cached)
            tier = self._forwarder.target_tier(request, decision.tier)
            bind_tier_context(tier.value)
            result = await self._forwarder.forward(request, tier)
        except Exception as exc:
            log.warning(
                "proxy.fallback",
                fallback_tier=FALLBACK_TIER.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            bind_tier_context(FALLBACK_TIER.value)
            try:
                result = await self._forwarder.forward(request, FALLBACK_TIER)
            except Exception as fallback_exc:
                log.error(
                    "proxy.fallback_failed",
                    error_type=type(fallback_exc).__name__,
                    error=str(fallback_exc),
                )
                raise RouterError(str(fallback_exc)) from fallback_exc
            fallback = True

        body = dict(result.body)
        body["model"] = f"{self._namespace}/auto"

        usage = body.get("usage") if isinstance(body.get("usage"), dict) else {}
        await self._record(
            request_id=request_id,
            messages=messages,
            evaluation=evaluation,
            tier=result.tier,
            model_used=result.model_id,
            tokens_in=_int_or_zero(usage.get("prompt_tokens")),
            tokens_out=_int_or_zero(usage.get("completion_tokens")),
            started=started,
            fallback=fallback,
        )
        return body

    # ------------------------------------------------------------------ #
    # Streaming
    # ------------------------------------------------------------------ #

    async def handle_stream(
        self, request: dict[str, Any], request_id: str | None = None
    ) -> AsyncIterator[dict[str, Any]]:
        """Route and relay a streaming chat completion.

        Yields relabelled chunks, an end-of-stream chunk, or a single error
        event if the stream breaks after output has started.

        Raises:
            RouterError: Nothing was relayed and the MID fallback also failed
        """
        request_id = request_id or generate_request_id()
        bind_request_context(request_id)
        started = time.perf_counter()
        messages = request_messages(request)

        evaluation: EvaluationResult | None = None
        usage = StreamUsage()
        relayed = 0
        fallback = False
        try:
            evaluation = await self._evaluator.evaluate(messages)
            decision = self._engine.decide(evaluation.evaluation, evaluation.cached)
            tier = self._forwarder.target_tier(request, decision.tier)
            bind_tier_context(tier.value)
            async for chunk in self._forwarder.stream(request, tier, usage):
                relayed += 1
                yield chunk
        except Exception as exc:
            if relayed or isinstance(exc, StreamInterruptedError):
                log.error(
                    "proxy.stream_interrupted",
                    tier=usage.tier.value if usage.tier else None,
                    chunks=relayed,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                yield error_event(request_id, str(exc))
            else:
                log.warning(
                    "proxy.fallback",
                    fallback_tier=FALLBACK_TIER.value,
                    streaming=True,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                bind_tier_context(FALLBACK_TIER.value)
                fallback = True
                usage = StreamUsage()
                try:
                    async for chunk in self._forwarder.stream(request, FALLBACK_TIER, usage):
                        relayed += 1
                        yield chunk
                except Exception as fallback_exc:
                    log.error(
                        "proxy.fallback_failed",
                        streaming=True,
                        chunks=relayed,
                        error_type=type(fallback_exc).__name__,
                        error=str(fallback_exc),
                    )
                    if not relayed:
                        raise RouterError(str(fallback_exc)) from fallback_exc
                    yield error_event(request_id, str(fallback_exc))

        await self._record(
            request_id=request_id,
            messages=messages,
            evaluation=evaluation,
            tier=usage.tier or FALLBACK_TIER,
            model_used=usage.model_id or self._providers.model_id(FALLBACK_TIER),
            tokens_in=estimate_tokens(
                json.dumps(messages, ensure_ascii=False, separators=(",", ":"))
            ),
            tokens_out=usage.tokens_out,
            started=started,
            fallback=fallback,
        )

    # ------------------------------------------------------------------ #
    # Telemetry
    # ------------------------------------------------------------------ #

    async def _record(
        self,
        *,
        request_id: str,
        messages: list[Any],
        evaluation: EvaluationResult | None,
        tier: RouteTier,
        model_used: str,
        tokens_in: int,
        tokens_out: int,
        started: float,
        fallback: bool,
    ) -> None:
        evaluated = evaluation.evaluation if evaluation else DEFAULT_EVALUATION
        evaluation_ms = evaluation.latency_ms if evaluation else 0
        total_ms = _elapsed_ms(started)

        entry = RoutingLogEntry(
            timestamp=datetime.now(UTC).isoformat(),
            request_id=request_id,
            score=evaluated.complexity_score,
            tier=tier,
            model_used=model_used,
            task_type=evaluated.task_type.value,
            confidence=evaluated.confidence,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            total_latency_ms=total_ms,
            evaluation_latency_ms=evaluation_ms,
            forwarding_latency_ms=max(0, total_ms - evaluation_ms),
            cached=evaluation.cached if evaluation else False,
            prompt_hash=evaluation.content_hash if evaluation else content_hash(messages),
            fallback=fallback,
        )
        await self._telemetry.record(entry)

    def get_stats(self) -> dict[str, Any]:
        """Routing configuration plus the current stats snapshot."""
        return {
            "routing": self._engine.describe(self._providers),
            "stats": self._telemetry.get_stats(),
        }

    def reset_stats(self) -> None:
        self._telemetry.reset()


def _int_or_zero(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value
