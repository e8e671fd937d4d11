"""Telemetry package for observability.

This package contains:
- Structured logging with request correlation
- Routing statistics and the append-only routing log (in helix_router/routing/stats.py)
"""

from __future__ import annotations

from helix_router.telemetry.logging import (
    bind_request_context,
    bind_tier_context,
    clear_context,
    configure_logging,
)

__all__ = [
    "bind_request_context",
    "bind_tier_context",
    "clear_context",
    "configure_logging",
]
