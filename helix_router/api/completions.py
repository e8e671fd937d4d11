"""Chat completions endpoint - POST /v1/chat/completions

OpenAI-compatible. The request body is passed through to HelixProxy as-is;
``stream: true`` selects the SSE path.

Streaming responses are primed before the HTTP status is sent: if neither
the routed tier nor the MID fallback produces a first chunk, the client gets
a plain 500 instead of an empty event stream.
"""

from __future__ import annotations

import json
from collections.abc import AsyncIterator
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from helix_router.api.dependencies import get_proxy
from helix_router.routing.forwarding import DONE_SENTINEL
from helix_router.routing.proxy import HelixProxy, RouterError, generate_request_id
from helix_router.telemetry.logging import clear_context

log = structlog.get_logger(__name__)

router = APIRouter(prefix="/v1", tags=["completions"])


def _internal_error(exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": {"message": str(exc) or "Internal error", "type": "internal_error"}},
    )


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


async def _event_stream(
    first: dict[str, Any] | None, events: AsyncIterator[dict[str, Any]]
) -> AsyncIterator[str]:
    try:
        if first is not None:
            yield _sse(first)
        async for event in events:
            yield _sse(event)
        yield f"data: {DONE_SENTINEL}\n\n"
    finally:
        await events.aclose()


@router.post("/chat/completions", summary="Routed chat completion")
async def chat_completions(
    request: Request,
    proxy: HelixProxy = Depends(get_proxy),
) -> Response:
    """Route a chat completion to the PRO, MID or LOW backend."""
    clear_context()
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid JSON"})

    if not isinstance(body, dict):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": "Invalid JSON"})

    request_id = generate_request_id()

    if body.get("stream"):
        events = proxy.handle_stream(body, request_id)
        try:
            first = await anext(events)
        except StopAsyncIteration:
            first = None
        except RouterError as exc:
            log.error("completions.stream_failed", request_id=request_id, error=str(exc))
            return _internal_error(exc)

        return StreamingResponse(
            _event_stream(first, events),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",  # Disable nginx buffering
                "X-Request-ID": request_id,
            },
        )

    try:
        result = await proxy.handle_completion(body, request_id)
    except RouterError as exc:
        log.error("completions.failed", request_id=request_id, error=str(exc))
        return _internal_error(exc)

    return JSONResponse(content=result, headers={"X-Request-ID": request_id})
