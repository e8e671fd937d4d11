"""Health and model-listing endpoints.

/health, /v1/health - Liveness: the router process is up
/v1/models          - Router model ids clients may request
"""

from __future__ import annotations

from datetime import UTC, datetime

from fastapi import APIRouter, Depends

from helix_router import __version__
from helix_router.api.dependencies import get_proxy
from helix_router.routing.providers import RouteTier
from helix_router.routing.proxy import HelixProxy

router = APIRouter(tags=["health"])


@router.get("/health")
@router.get("/v1/health")
async def health() -> dict:
    """Liveness probe - always returns 200 if the process is running."""
    return {
        "status": "ok",
        "service": "helix-router",
        "version": __version__,
        "timestamp": datetime.now(UTC).isoformat(),
    }


@router.get("/v1/models")
async def list_models(proxy: HelixProxy = Depends(get_proxy)) -> dict:
    """List the automatic model and one explicit model per tier."""
    names = ["auto", *(tier.value for tier in RouteTier)]
    return {
        "object": "list",
        "data": [
            {"id": f"{proxy.namespace}/{name}", "object": "model", "owned_by": "helix"}
            for name in names
        ],
    }
