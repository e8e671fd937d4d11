"""Request forwarding to tier backends, buffered and streamed.

The ForwardingClient relays an OpenAI-style chat completion request to the
backend serving a tier. The only field it rewrites is ``model`` (set to the
backend model id); streamed requests additionally get ``stream: true``.

Explicit tier requests ("pro", "helix-router/pro", ...) always win over the
tier computed by the routing engine; callers resolve them with target_tier()
before forwarding.

Streaming relay:
    backend bytes -> SSELineBuffer (accumulate, split on newline, carry the
    partial tail) -> "data: ..." payloads -> JSON chunks relabelled with the
    router model name -> caller. "[DONE]" becomes an explicit end-of-stream
    chunk. Malformed chunks are skipped. The backend connection is held in an
    ``async with`` block so it is released on completion, error and
    consumer cancellation alike.
"""

from __future__ import annotations

import json
import math
import time
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from helix_router.routing.complexity import request_messages
from helix_router.routing.providers import RouteTier, resolve_explicit_tier

if TYPE_CHECKING:
    from helix_router.routing.providers import ProviderConfig, ProviderRegistry

log = structlog.get_logger(__name__)

DONE_SENTINEL = "[DONE]"
CHARS_PER_TOKEN = 4


class ForwardingError(Exception):
    """Forwarding to a tier backend failed."""

    def __init__(self, message: str, *, tier: RouteTier, status_code: int | None = None) -> None:
        super().__init__(message)
        self.tier = tier
        self.status_code = status_code


class BackendStatusError(ForwardingError):
    """Backend answered with a non-2xx status."""


class StreamInterruptedError(ForwardingError):
    """Stream failed after at least one chunk was relayed to the caller."""


def estimate_tokens(text: str) -> int:
    """Rough token estimate: characters / 4, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


# ---------------------------------------------------------------------------
# SSE framing
# ---------------------------------------------------------------------------


class SSELineBuffer:
    """Incremental line splitter for server-sent event bodies.

    Reads from the network do not respect line boundaries. feed() appends
    the new text, returns every complete line and keeps the unterminated
    remainder for the next read; flush() releases the remainder at EOF.
    """

    def __init__(self) -> None:
        self._pending = ""

    def feed(self, text: str) -> list[str]:
        self._pending += text
        *complete, self._pending = self._pending.split("\n")
        return [line.rstrip("\r") for line in complete]

    def flush(self) -> list[str]:
        remainder, self._pending = self._pending, ""
        remainder = remainder.rstrip("\r")
        return [remainder] if remainder.strip() else []

    @property
    def pending(self) -> str:
        return self._pending


def parse_sse_data(line: str) -> str | None:
    """Return the payload of a ``data:`` line, or None for any other line."""
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None
    return stripped[len("data:"):].strip()


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ForwardResult:
    """Buffered backend response plus where it was served from."""

    body: dict[str, Any]
    tier: RouteTier
    model_id: str
    latency_ms: int


@dataclass
class StreamUsage:
    """Accounting filled in while a stream is relayed.

    tokens_out is estimated from streamed content unless the backend sends
    an explicit usage block, which then takes precedence.
    """

    tier: RouteTier | None = None
    model_id: str = ""
    chunks: int = 0
    skipped: int = 0
    estimated_tokens_out: int = 0
    backend_usage: dict[str, int] = field(default_factory=dict)
    finished: bool = False

    @property
    def tokens_out(self) -> int:
        if "completion_tokens" in self.backend_usage:
            return self.backend_usage["completion_tokens"]
        return self.estimated_tokens_out


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class ForwardingClient:
    """Relays chat completions to the backend of a tier."""

    def __init__(
        self,
        providers: ProviderRegistry,
        http_client: httpx.AsyncClient,
        namespace: str = "helix-router",
        timeout_seconds: float = 120.0,
    ) -> None:
        self._providers = providers
        self._http = http_client
        self._namespace = namespace
        self._timeout = timeout_seconds

    def target_tier(self, request: dict[str, Any], tier: RouteTier) -> RouteTier:
        """Tier that will actually serve the request (explicit override wins)."""
        explicit = resolve_explicit_tier(request.get("model"), self._namespace)
        if explicit is not None and explicit != tier:
            log.info(
                "forwarding.explicit_tier_override",
                requested_model=request.get("model"),
                routed_tier=tier.value,
                explicit_tier=explicit.value,
            )
        return explicit or tier

    def stream_label(self, tier: RouteTier) -> str:
        return f"{self._namespace}/{tier.value}"

    async def forward(self, request: dict[str, Any], tier: RouteTier) -> ForwardResult:
        """Send a non-streaming completion to the tier's backend.

        Args:
            request: Inbound request body (OpenAI format)
            tier: Tier whose backend serves the request

        Returns:
            ForwardResult with the raw backend JSON body

        Raises:
            BackendStatusError: Backend returned a non-2xx status
            ForwardingError: Transport failure, timeout or non-JSON body
        """
        provider = self._providers.get(tier)
        body = {**request, "model": provider.model_id}

        started = time.perf_counter()
        log.debug(
            "forwarding.request",
            tier=tier.value,
            model_id=provider.model_id,
            message_count=len(request_messages(request)),
        )

        try:
            response = await self._http.post(
                provider.completions_url,
                json=body,
                headers=provider.auth_headers(),
                timeout=self._timeout,
            )
        except httpx.HTTPError as exc:
            raise ForwardingError(
                f"{tier.value} backend unreachable: {type(exc).__name__}: {exc}",
                tier=tier,
            ) from exc

        if response.is_error:
            raise BackendStatusError(
                f"{tier.value} backend returned HTTP {response.status_code}",
                tier=tier,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ForwardingError(
                f"{tier.value} backend returned a non-JSON body", tier=tier
            ) from exc

        if not isinstance(data, dict):
            raise ForwardingError(f"{tier.value} backend returned a non-object body", tier=tier)

        latency_ms = int((time.perf_counter() - started) * 1000)
        log.info(
            "forwarding.completed",
            tier=tier.value,
            model_id=provider.model_id,
            latency_ms=latency_ms,
        )
        return ForwardResult(body=data, tier=tier, model_id=provider.model_id, latency_ms=latency_ms)

    async def stream(
        self,
        request: dict[str, Any],
        tier: RouteTier,
        usage: StreamUsage,
    ) -> AsyncIterator[dict[str, Any]]:
        """Relay a streamed completion chunk by chunk.

        Failures before the first relayed chunk raise ForwardingError so the
        caller may fall back; failures afterwards raise StreamInterruptedError.

        Args:
            request: Inbound request body (OpenAI format)
            tier: Tier whose backend serves the request
            usage: Accounting object updated in place

        Yields:
            Parsed chunks with ``model`` relabelled, then one end-of-stream chunk
        """
        provider = self._providers.get(tier)
        label = self.stream_label(tier)
        usage.tier = tier
        usage.model_id = provider.model_id

        body = {**request, "model": provider.model_id, "stream": True}

        try:
            async with self._http.stream(
                "POST",
                provider.completions_url,
                json=body,
                headers=provider.auth_headers(),
                timeout=self._timeout,
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise BackendStatusError(
                        f"{tier.value} backend returned HTTP {response.status_code}",
                        tier=tier,
                        status_code=response.status_code,
                    )

                async for chunk in self._relay(response, provider, label, usage):
                    yield chunk
                    if usage.finished:
                        return
        except ForwardingError:
            raise
        except httpx.HTTPError as exc:
            error_cls = StreamInterruptedError if usage.chunks else ForwardingError
            raise error_cls(
                f"{tier.value} stream failed: {type(exc).__name__}: {exc}",
                tier=tier,
            ) from exc

        if not usage.finished:
            log.warning("forwarding.stream_ended_without_done", tier=tier.value, chunks=usage.chunks)

    async def _relay(
        self,
        response: httpx.Response,
        provider: ProviderConfig,
        label: str,
        usage: StreamUsage,
    ) -> AsyncIterator[dict[str, Any]]:
        buffer = SSELineBuffer()
        async for text in response.aiter_text():
            for line in buffer.feed(text):
                chunk = self._handle_line(line, provider, label, usage)
                if chunk is not None:
                    yield chunk
                    if usage.finished:
                        return

        for line in buffer.flush():
            chunk = self._handle_line(line, provider, label, usage)
            if chunk is not None:
                yield chunk

    def _handle_line(
        self,
        line: str,
        provider: ProviderConfig,
        label: str,
        usage: StreamUsage,
    ) -> dict[str, Any] | None:
        payload = parse_sse_data(line)
        if not payload:
            return None

        if payload == DONE_SENTINEL:
            usage.finished = True
            return end_of_stream_chunk(label)

        try:
            chunk = json.loads(payload)
        except json.JSONDecodeError:
            usage.skipped += 1
            log.debug("forwarding.malformed_chunk_skipped", model_id=provider.model_id)
            return None

        if not isinstance(chunk, dict):
            usage.skipped += 1
            return None

        chunk["model"] = label
        usage.chunks += 1
        usage.estimated_tokens_out += estimate_tokens(_delta_content(chunk))

        chunk_usage = chunk.get("usage")
        if isinstance(chunk_usage, dict):
            usage.backend_usage = {
                key: value for key, value in chunk_usage.items() if isinstance(value, int)
            }

        return chunk


def _delta_content(chunk: dict[str, Any]) -> str:
    try:
        content = chunk["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return ""
    return content if isinstance(content, str) else ""


def end_of_stream_chunk(label: str, chunk_id: str | None = None) -> dict[str, Any]:
    """Terminal chunk sent to the caller when the backend signals [DONE]."""
    return {
        "id": chunk_id or f"chatcmpl-{int(time.time() * 1000)}",
        "object": "chat.completion.chunk",
        "created": int(time.time()),
        "model": label,
        "choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}],
    }
