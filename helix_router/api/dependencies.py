"""FastAPI dependencies shared by the API routers."""

from __future__ import annotations

from fastapi import Request

from helix_router.routing.proxy import HelixProxy


def get_proxy(request: Request) -> HelixProxy:
    """Return the HelixProxy created by the application lifespan."""
    return request.app.state.proxy
