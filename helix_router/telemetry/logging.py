"""Structured logging configuration.

Configures structlog with JSON output in production and a console renderer
in dev. Request-scoped fields (request_id, tier) are carried through
contextvars so every log line emitted while a request is being routed is
correlated without threading the id through each call.

Log format (production):
    {
        "timestamp": "2026-02-17T10:30:45.123456Z",
        "level": "info",
        "logger": "helix_router.routing.stats",
        "event": "telemetry.recorded",
        "request_id": "hr_1739788245123_k3j9x0a1b",
        "tier": "mid",
        "score": 50
    }
"""

from __future__ import annotations

import logging
import sys

import structlog
from structlog.types import Processor


def configure_logging(
    *,
    json_logs: bool = False,
    log_level: str = "INFO",
) -> None:
    """Configure structured logging for the application.

    Args:
        json_logs: Use JSON format (True for production, False for dev)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_logs:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# ------------------------------------------------------------------ #
# Context Binding Helpers
# ------------------------------------------------------------------ #


def bind_request_context(request_id: str) -> None:
    """Bind the routed request id to log context for this request.

    Args:
        request_id: Router request identifier (hr_...)
    """
    structlog.contextvars.bind_contextvars(request_id=request_id)


def bind_tier_context(tier: str) -> None:
    """Bind the tier currently serving the request."""
    structlog.contextvars.bind_contextvars(tier=tier)


def clear_context() -> None:
    """Clear all context variables (useful for testing)."""
    structlog.contextvars.clear_contextvars()
