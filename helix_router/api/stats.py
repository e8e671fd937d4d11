"""Routing statistics endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from helix_router.api.dependencies import get_proxy
from helix_router.routing.proxy import HelixProxy

router = APIRouter(tags=["stats"])


@router.get("/stats")
@router.get("/v1/stats")
async def get_stats(proxy: HelixProxy = Depends(get_proxy)) -> dict:
    """Routing configuration and running statistics."""
    return proxy.get_stats()


@router.post("/stats/reset")
async def reset_stats(proxy: HelixProxy = Depends(get_proxy)) -> dict:
    """Zero the in-memory aggregate. The routing log file is left untouched."""
    proxy.reset_stats()
    return proxy.get_stats()
