"""FastAPI application entrypoint.

Application startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Open the shared httpx client and build the HelixProxy
4. Register middleware (CORS) and include routers

Shutdown order:
1. Close the httpx client (drops pooled backend connections)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import httpx
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from helix_router import __version__
from helix_router.api.router import api_router
from helix_router.config import Settings, get_settings
from helix_router.routing.proxy import HelixProxy
from helix_router.telemetry.logging import configure_logging

log = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    settings: Settings = app.state.settings

    # Configure structured logging first (before any log calls)
    configure_logging(
        json_logs=settings.json_logs or settings.is_prod,
        log_level="DEBUG" if settings.debug else settings.log_level,
    )

    log.info(
        "app.starting",
        environment=settings.environment,
        pro_threshold=settings.pro_threshold,
        mid_threshold=settings.mid_threshold,
        routing_log=str(settings.routing_log_path),
    )

    http_client = httpx.AsyncClient(timeout=settings.backend_timeout_seconds)
    app.state.http_client = http_client
    app.state.proxy = HelixProxy.from_settings(settings, http_client)

    log.info("app.ready", host=settings.host, port=settings.port)
    yield

    await http_client.aclose()
    log.info("app.shutdown")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()

    app = FastAPI(
        title="Helix Router",
        description=(
            "OpenAI-compatible proxy that routes each chat completion to a "
            "PRO, MID or LOW backend based on request complexity."
        ),
        version=__version__,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type"],
    )

    app.include_router(api_router)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"error": {"message": "Internal server error", "type": "internal_error"}},
        )

    return app
