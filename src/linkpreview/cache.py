"""In-memory preview cache with TTL expiry and bounded capacity.

Keys are normalized URLs. Reads never promote an entry; when the cache is full
the entry with the oldest creation time is evicted, regardless of how soon
other entries expire. Expired entries are swept opportunistically on every
miss and every write, so there is no background cleanup task.

Mutation happens under an ``asyncio.Lock``. Lookups are plain dict reads and
need no lock on the event loop thread.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable

import structlog

from linkpreview.models.preview import CacheEntry, PreviewPayload

log = structlog.get_logger()


class PreviewCache:
    """Bounded TTL cache implementing PreviewCacheProtocol."""

    def __init__(
        self,
        *,
        ttl_seconds: float,
        max_entries: int,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    async def get(self, key: str) -> PreviewPayload | None:
        """Return the cached payload, or ``None`` on miss or expiry."""
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at > now:
            return entry.value

        async with self._lock:
            self._purge_expired(now)
            self._entries.pop(key, None)
        return None

    async def put(self, key: str, value: PreviewPayload) -> None:
        """Insert or overwrite ``key``. Evicts the oldest entry when full."""
        async with self._lock:
            now = self._clock()
            self._purge_expired(now)

            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_oldest()

            self._entries[key] = CacheEntry(
                created_at=now,
                expires_at=now + self._ttl_seconds,
                value=value,
            )

    def _purge_expired(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
        for key in expired:
            del self._entries[key]
        if expired:
            log.debug("preview_cache_purged", removed=len(expired))

    def _evict_oldest(self) -> None:
        if not self._entries:
            return
        oldest_key = min(self._entries, key=lambda key: self._entries[key].created_at)
        del self._entries[oldest_key]
        log.debug("preview_cache_evicted", remaining=len(self._entries))
