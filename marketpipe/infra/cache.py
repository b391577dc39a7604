"""
Best-effort bar cache used as a write-through target by the fallback chain.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Protocol

from marketpipe.core.clock import Clock, WallClock

__all__ = ["Cache", "InMemoryTTLCache"]

logger = logging.getLogger(__name__)


class Cache(Protocol):
    """Byte cache; callers must tolerate any method raising."""

    async def get(self, key: str) -> bytes | None: ...

    async def set(self, key: str, value: bytes, ttl: int) -> None: ...


class InMemoryTTLCache:
    """Process-local cache with per-entry expiry.

    Expired entries are evicted lazily on read and when the cache grows past
    ``max_entries``.
    """

    def __init__(self, clock: Clock | None = None, max_entries: int = 1024):
        self.clock = clock or WallClock()
        self.max_entries = max_entries
        self._entries: dict[str, tuple[bytes, float]] = {}
        self._lock = asyncio.Lock()

    def _now(self) -> float:
        return self.clock.now_ms() / 1000.0

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                logger.debug(f"Cache MISS: {key}")
                return None
            value, expires_at = entry
            if expires_at <= self._now():
                del self._entries[key]
                logger.debug(f"Cache EXPIRED: {key}")
                return None
            logger.debug(f"Cache HIT: {key}")
            return value

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        if ttl <= 0:
            return
        async with self._lock:
            self._entries[key] = (value, self._now() + ttl)
            if len(self._entries) > self.max_entries:
                self._evict()

    def _evict(self) -> None:
        now = self._now()
        for key in [k for k, (_, expires) in self._entries.items() if expires <= now]:
            del self._entries[key]
        # Still full: drop the entries closest to expiry.
        overflow = len(self._entries) - self.max_entries
        if overflow > 0:
            for key, _ in sorted(self._entries.items(), key=lambda kv: kv[1][1])[:overflow]:
                del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
