"""Tests for ForwardingClient, SSE framing and token estimation."""

from __future__ import annotations

import json

import httpx
import pytest

from helix_router.routing.forwarding import (
    BackendStatusError,
    ForwardingClient,
    ForwardingError,
    SSELineBuffer,
    StreamInterruptedError,
    StreamUsage,
    estimate_tokens,
    parse_sse_data,
)
from helix_router.routing.providers import ProviderRegistry, RouteTier
from tests.fakes import byte_stream, connect_error, sse_bytes, status_error, stream_chunk


@pytest.fixture
def registry(settings) -> ProviderRegistry:
    return ProviderRegistry.from_settings(settings)


@pytest.fixture
def forwarder(registry, http_client) -> ForwardingClient:
    return ForwardingClient(registry, http_client)


REQUEST = {
    "model": "helix-router/auto",
    "messages": [{"role": "user", "content": "hello"}],
    "temperature": 0.3,
}


async def _collect(forwarder, request, tier, usage):
    return [chunk async for chunk in forwarder.stream(request, tier, usage)]


# ------------------------------------------------------------------ #
# SSE framing
# ------------------------------------------------------------------ #


class TestSSELineBuffer:
    def test_splits_complete_lines(self):
        buffer = SSELineBuffer()
        assert buffer.feed("data: a\n\ndata: b\n") == ["data: a", "", "data: b"]
        assert buffer.pending == ""

    def test_carries_partial_line(self):
        buffer = SSELineBuffer()
        assert buffer.feed('data: {"x"') == []
        assert buffer.feed(': 1}\n') == ['data: {"x": 1}']

    def test_strips_carriage_returns(self):
        assert SSELineBuffer().feed("data: a\r\n") == ["data: a"]

    def test_flush_returns_unterminated_tail(self):
        buffer = SSELineBuffer()
        buffer.feed("data: [DONE]")
        assert buffer.flush() == ["data: [DONE]"]
        assert buffer.flush() == []


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("data: {}", "{}"),
        ("data:[DONE]", "[DONE]"),
        (": keep-alive", None),
        ("event: message", None),
        ("", None),
    ],
)
def test_parse_sse_data(line, expected):
    assert parse_sse_data(line) == expected


@pytest.mark.parametrize(("text", "tokens"), [("", 0), ("abc", 1), ("abcd", 1), ("abcde", 2)])
def test_estimate_tokens(text, tokens):
    assert estimate_tokens(text) == tokens


# ------------------------------------------------------------------ #
# Buffered forwarding
# ------------------------------------------------------------------ #


class TestForward:
    @pytest.mark.asyncio
    async def test_rewrites_only_model(self, forwarder, backends):
        result = await forwarder.forward(REQUEST, RouteTier.PRO)

        assert result.tier == RouteTier.PRO
        assert result.model_id == "backend-pro"
        assert result.body["choices"][0]["message"]["content"] == "hello from pro"

        sent = backends.completion_calls("pro")[0]
        assert json.loads(sent.content) == {**REQUEST, "model": "backend-pro"}
        assert sent.headers["Authorization"] == "Bearer sk-pro"
        assert str(sent.url) == "http://pro.test/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_non_2xx_raises_backend_status_error(self, forwarder, backends):
        backends.overrides["mid"] = status_error(502)
        with pytest.raises(BackendStatusError) as exc_info:
            await forwarder.forward(REQUEST, RouteTier.MID)
        assert exc_info.value.status_code == 502
        assert exc_info.value.tier == RouteTier.MID

    @pytest.mark.asyncio
    async def test_transport_error_raises_forwarding_error(self, forwarder, backends):
        backends.overrides["low"] = connect_error
        with pytest.raises(ForwardingError, match="unreachable"):
            await forwarder.forward(REQUEST, RouteTier.LOW)

    @pytest.mark.asyncio
    async def test_non_json_body(self, forwarder, backends):
        backends.overrides["pro"] = lambda request: httpx.Response(200, text="<html>oops</html>")
        with pytest.raises(ForwardingError, match="non-JSON"):
            await forwarder.forward(REQUEST, RouteTier.PRO)

    def test_target_tier_honours_explicit_model(self, forwarder):
        assert forwarder.target_tier({"model": "pro"}, RouteTier.LOW) == RouteTier.PRO
        assert forwarder.target_tier({"model": "helix-router/low"}, RouteTier.PRO) == RouteTier.LOW
        assert forwarder.target_tier({"model": "helix-router/auto"}, RouteTier.MID) == RouteTier.MID
        assert forwarder.target_tier({"model": "gpt-4o"}, RouteTier.MID) == RouteTier.MID


# ------------------------------------------------------------------ #
# Streaming
# ------------------------------------------------------------------ #


class TestStream:
    @pytest.mark.asyncio
    async def test_relabels_chunks_and_ends_with_stop(self, forwarder, backends):
        usage = StreamUsage()
        chunks = await _collect(forwarder, REQUEST, RouteTier.MID, usage)

        assert [c["model"] for c in chunks] == ["helix-router/mid"] * 4
        assert [c["choices"][0]["delta"].get("content") for c in chunks[:3]] == ["Hello", " from ", "mid"]
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"
        assert chunks[-1]["choices"][0]["delta"] == {}
        assert usage.finished is True
        assert usage.chunks == 3
        assert usage.tokens_out == 2 + 2 + 1

        sent = json.loads(backends.completion_calls("mid")[0].content)
        assert sent["stream"] is True
        assert sent["model"] == "backend-mid"

    @pytest.mark.asyncio
    async def test_chunk_split_across_reads(self, forwarder, backends):
        raw = sse_bytes("backend-pro", ["abcdefgh"])
        parts = [raw[:7], raw[7:30], raw[30:]]
        backends.overrides["pro"] = lambda request: httpx.Response(200, content=byte_stream(parts))

        chunks = await _collect(forwarder, REQUEST, RouteTier.PRO, StreamUsage())

        assert chunks[0]["choices"][0]["delta"]["content"] == "abcdefgh"
        assert chunks[-1]["choices"][0]["finish_reason"] == "stop"

    @pytest.mark.asyncio
    async def test_malformed_chunk_is_skipped(self, forwarder, backends):
        good = json.dumps(stream_chunk("backend-low", "ok"))
        body = f"data: {{not json\n\ndata: {good}\n\ndata: [DONE]\n\n".encode()
        backends.overrides["low"] = lambda request: httpx.Response(200, content=body)

        usage = StreamUsage()
        chunks = await _collect(forwarder, REQUEST, RouteTier.LOW, usage)

        assert len(chunks) == 2
        assert usage.skipped == 1

    @pytest.mark.asyncio
    async def test_reading_stops_at_done(self, forwarder, backends):
        body = sse_bytes("backend-pro", ["a"]) + sse_bytes("backend-pro", ["late"])
        backends.overrides["pro"] = lambda request: httpx.Response(200, content=body)

        chunks = await _collect(forwarder, REQUEST, RouteTier.PRO, StreamUsage())

        assert len(chunks) == 2
        assert all(c["choices"][0]["delta"].get("content") != "late" for c in chunks)

    @pytest.mark.asyncio
    async def test_backend_usage_takes_precedence(self, forwarder, backends):
        chunk = stream_chunk("backend-pro", "hello world")
        chunk["usage"] = {"prompt_tokens": 5, "completion_tokens": 42}
        body = f"data: {json.dumps(chunk)}\n\ndata: [DONE]\n\n".encode()
        backends.overrides["pro"] = lambda request: httpx.Response(200, content=body)

        usage = StreamUsage()
        await _collect(forwarder, REQUEST, RouteTier.PRO, usage)

        assert usage.tokens_out == 42

    @pytest.mark.asyncio
    async def test_missing_done_still_terminates(self, forwarder, backends):
        backends.overrides["mid"] = lambda request: httpx.Response(
            200, content=sse_bytes("backend-mid", ["x"], done=False)
        )
        usage = StreamUsage()
        chunks = await _collect(forwarder, REQUEST, RouteTier.MID, usage)

        assert len(chunks) == 1
        assert usage.finished is False

    @pytest.mark.asyncio
    async def test_error_status_before_any_chunk(self, forwarder, backends):
        backends.overrides["pro"] = status_error(500)
        usage = StreamUsage()
        with pytest.raises(BackendStatusError):
            await _collect(forwarder, REQUEST, RouteTier.PRO, usage)
        assert usage.chunks == 0

    @pytest.mark.asyncio
    async def test_connect_error_is_forwarding_error(self, forwarder, backends):
        backends.overrides["pro"] = connect_error
        with pytest.raises(ForwardingError) as exc_info:
            await _collect(forwarder, REQUEST, RouteTier.PRO, StreamUsage())
        assert not isinstance(exc_info.value, StreamInterruptedError)

    @pytest.mark.asyncio
    async def test_failure_after_first_chunk_is_interruption(self, forwarder, backends):
        first = sse_bytes("backend-pro", ["partial"], done=False)
        backends.overrides["pro"] = lambda request: httpx.Response(
            200, content=byte_stream([first], error=httpx.ReadError("connection reset"))
        )

        received = []
        with pytest.raises(StreamInterruptedError):
            async for chunk in forwarder.stream(REQUEST, RouteTier.PRO, StreamUsage()):
                received.append(chunk)

        assert len(received) == 1
