"""Bounded TTL cache for complexity evaluations.

Keys are content hashes of the user turns; values are immutable
ComplexityEvaluation instances. Expiry is lazy (checked on lookup) and the
entry count is capped: inserting past the cap evicts the oldest entries by
creation time until the cache is back at the bound.

Thread-safe via asyncio.Lock: lookup, insert and eviction run under one lock
so concurrent requests never observe or produce an over-full cache.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from helix_router.routing.complexity import ComplexityEvaluation

log = structlog.get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class CacheEntry:
    key: str
    value: ComplexityEvaluation
    created_at: float


class EvaluationCache:
    """Dict-backed evaluation cache with TTL and size bound."""

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")

        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._store: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> ComplexityEvaluation | None:
        async with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            if self._clock() - entry.created_at >= self._ttl:
                del self._store[key]
                log.debug("evaluation_cache.expired", key=key)
                return None
            return entry.value

    async def set(self, key: str, value: ComplexityEvaluation) -> None:
        async with self._lock:
            # Re-inserting moves the key to the end so ties on created_at evict older keys first
            self._store.pop(key, None)
            self._store[key] = CacheEntry(key=key, value=value, created_at=self._clock())
            overflow = len(self._store) - self._max_entries
            if overflow > 0:
                oldest = sorted(self._store.values(), key=lambda e: e.created_at)[:overflow]
                for entry in oldest:
                    del self._store[entry.key]
                log.debug("evaluation_cache.evicted", count=overflow, size=len(self._store))

    def __len__(self) -> int:
        return len(self._store)
