"""Main API router - aggregates all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from helix_router.api import completions, health, stats

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(stats.router)
api_router.include_router(completions.router)
