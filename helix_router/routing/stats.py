"""Routing telemetry: audit log entries, running statistics, durable log.

Every completed request (including ones served by the MID fallback)
produces exactly one RoutingLogEntry. The TelemetryRecorder folds it into
the in-memory RoutingStats aggregate and appends it as one JSON line to the
routing log. Telemetry never fails a request: write errors and timeouts are
logged and swallowed.

Stats tracked:
- Total requests, per-tier counts, per-task-type counts
- Running average score, total latency and evaluation latency
- Cache hit rate (percentage of requests whose evaluation was cached)
- Fallback count
"""

from __future__ import annotations

import asyncio
import json
import threading
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import structlog

from helix_router.routing.providers import RouteTier

log = structlog.get_logger(__name__)


@dataclass(frozen=True)
class RoutingLogEntry:
    """Append-only audit record of one routed request.

    Attributes:
        timestamp: ISO-8601 UTC completion time
        request_id: Router request id (hr_...)
        score: complexity_score used for routing
        tier: Tier that actually served the request
        model_used: Backend model id that served the request
        task_type: Evaluated task type
        confidence: Evaluator confidence
        tokens_in: Prompt tokens (backend usage or estimate)
        tokens_out: Completion tokens (backend usage or estimate)
        total_latency_ms: End-to-end latency
        evaluation_latency_ms: Auxiliary evaluation latency (0 on cache hit)
        forwarding_latency_ms: total minus evaluation latency
        cached: Whether the evaluation came from the cache
        prompt_hash: Content hash of the user turns
        fallback: Whether the MID fallback served the request
    """

    timestamp: str
    request_id: str
    score: int
    tier: RouteTier
    model_used: str
    task_type: str
    confidence: float
    tokens_in: int
    tokens_out: int
    total_latency_ms: int
    evaluation_latency_ms: int
    forwarding_latency_ms: int
    cached: bool
    prompt_hash: str
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "requestId": self.request_id,
            "score": self.score,
            "tier": self.tier.value,
            "modelUsed": self.model_used,
            "taskType": self.task_type,
            "confidence": self.confidence,
            "tokensIn": self.tokens_in,
            "tokensOut": self.tokens_out,
            "totalLatencyMs": self.total_latency_ms,
            "evaluationLatencyMs": self.evaluation_latency_ms,
            "forwardingLatencyMs": self.forwarding_latency_ms,
            "cached": self.cached,
            "promptHash": self.prompt_hash,
            "fallback": self.fallback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RoutingLogEntry:
        return cls(
            timestamp=data["timestamp"],
            request_id=data["requestId"],
            score=int(data["score"]),
            tier=RouteTier(data["tier"]),
            model_used=data["modelUsed"],
            task_type=data["taskType"],
            confidence=float(data["confidence"]),
            tokens_in=int(data.get("tokensIn", 0)),
            tokens_out=int(data.get("tokensOut", 0)),
            total_latency_ms=int(data["totalLatencyMs"]),
            evaluation_latency_ms=int(data["evaluationLatencyMs"]),
            forwarding_latency_ms=int(data.get("forwardingLatencyMs", 0)),
            cached=bool(data["cached"]),
            prompt_hash=data.get("promptHash", ""),
            fallback=bool(data.get("fallback", False)),
        )

    def to_json_line(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False) + "\n"


def _round_half_up(value: float) -> int:
    return int(value + 0.5)


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


class RoutingStats:
    """Running aggregate over the stream of RoutingLogEntry values.

    Each record() applies an entry's full contribution under one lock so a
    concurrent snapshot() never sees a half-updated average.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._reset_locked()

    def _reset_locked(self) -> None:
        self._total = 0
        self._route_counts: dict[str, int] = {tier.value: 0 for tier in RouteTier}
        self._task_type_counts: dict[str, int] = {}
        self._score_sum = 0
        self._latency_sum = 0
        self._evaluation_sum = 0
        self._cache_hits = 0
        self._fallbacks = 0
        self._last_updated = _now_iso()

    def record(self, entry: RoutingLogEntry) -> None:
        with self._lock:
            self._total += 1
            self._route_counts[entry.tier.value] += 1
            self._task_type_counts[entry.task_type] = (
                self._task_type_counts.get(entry.task_type, 0) + 1
            )
            self._score_sum += entry.score
            self._latency_sum += entry.total_latency_ms
            self._evaluation_sum += entry.evaluation_latency_ms
            if entry.cached:
                self._cache_hits += 1
            if entry.fallback:
                self._fallbacks += 1
            self._last_updated = _now_iso()

    def snapshot(self) -> dict[str, Any]:
        """Return a consistent copy of the current statistics."""
        with self._lock:
            total = self._total
            return {
                "totalRequests": total,
                "routeCounts": dict(self._route_counts),
                "taskTypeCounts": dict(self._task_type_counts),
                "avgScore": _round_half_up(self._score_sum / total) if total else 0,
                "avgLatencyMs": _round_half_up(self._latency_sum / total) if total else 0,
                "avgEvaluationMs": _round_half_up(self._evaluation_sum / total) if total else 0,
                "cacheHitRate": _round_half_up(self._cache_hits / total * 100) if total else 0,
                "fallbackCount": self._fallbacks,
                "lastUpdated": self._last_updated,
            }

    def reset(self) -> None:
        with self._lock:
            self._reset_locked()


class RoutingLogWriter:
    """Appends entries as JSON lines to the routing log file."""

    def __init__(self, path: Path, write_timeout_seconds: float = 2.0) -> None:
        self._path = path
        self._timeout = write_timeout_seconds

    @property
    def path(self) -> Path:
        return self._path

    def _append(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(line)

    async def write(self, entry: RoutingLogEntry) -> None:
        """Append one entry off the event loop, bounded by the write timeout.

        Raises:
            OSError: File could not be written
            TimeoutError: Append did not finish within the timeout
        """
        await asyncio.wait_for(
            asyncio.to_thread(self._append, entry.to_json_line()),
            timeout=self._timeout,
        )


def read_log_entries(path: Path) -> Iterator[RoutingLogEntry]:
    """Yield entries from a routing log, skipping lines that do not parse."""
    if not path.exists():
        return

    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                yield RoutingLogEntry.from_dict(json.loads(line))
            except (ValueError, KeyError, TypeError) as exc:
                log.warning("routing_log.unreadable_line", path=str(path), line=lineno, error=str(exc))


class TelemetryRecorder:
    """Records routing entries into stats and the durable log."""

    def __init__(
        self,
        stats: RoutingStats,
        writer: RoutingLogWriter | None = None,
        enabled: bool = True,
    ) -> None:
        self._stats = stats
        self._writer = writer
        self._enabled = enabled

    async def record(self, entry: RoutingLogEntry) -> None:
        """Fold an entry into stats and append it to the log. Never raises."""
        if not self._enabled:
            return

        self._stats.record(entry)

        log.info(
            "telemetry.recorded",
            request_id=entry.request_id,
            tier=entry.tier.value,
            score=entry.score,
            task_type=entry.task_type,
            model_used=entry.model_used,
            latency_ms=entry.total_latency_ms,
            cached=entry.cached,
            fallback=entry.fallback,
        )

        if self._writer is None:
            return

        try:
            await self._writer.write(entry)
        except Exception as exc:
            log.error(
                "telemetry.write_failed",
                request_id=entry.request_id,
                path=str(self._writer.path),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def get_stats(self) -> dict[str, Any]:
        return self._stats.snapshot()

    def reset(self) -> None:
        self._stats.reset()
        log.info("telemetry.stats_reset")


def format_stats(stats: dict[str, Any]) -> str:
    """Render a stats snapshot as a boxed text table."""
    width = 63
    rule = "+" + "-" * width + "+"

    def row(text: str) -> str:
        return f"| {text:<{width - 1}}|"

    lines = [
        rule,
        row("Helix Router Statistics".center(width - 1)),
        rule,
        row(f"Total Requests: {stats['totalRequests']}"),
        rule,
        row("Routing Distribution:"),
    ]
    for tier in RouteTier:
        lines.append(row(f"  {tier.value.upper()}: {stats['routeCounts'].get(tier.value, 0)}"))
    lines.append(rule)
    for task_type, count in sorted(stats["taskTypeCounts"].items()):
        lines.append(row(f"  {task_type}: {count}"))
    if stats["taskTypeCounts"]:
        lines.append(rule)
    lines.extend(
        [
            row(f"Average Score: {stats['avgScore']}"),
            row(f"Average Latency: {stats['avgLatencyMs']}ms"),
            row(f"Average Evaluation: {stats['avgEvaluationMs']}ms"),
            row(f"Cache Hit Rate: {stats['cacheHitRate']}%"),
            row(f"Fallbacks: {stats.get('fallbackCount', 0)}"),
            rule,
        ]
    )
    return "\n".join(lines)
