"""
In-process key/value cache with per-entry expiry.

Callers own their cache keys. Values that go stale when something changes
upstream (for Trakt calls, the relevant last-activity timestamp) are stored
with ``with_versioned_cache``: one entry per key, replaced when the version
changes, so stale versions never pile up.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

T = TypeVar("T")


@dataclass
class CacheEntry:
    value: Any
    expires_at: Optional[float]
    version: Any = None


class MemoryCache:
    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._entries: dict[str, CacheEntry] = {}
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    def _get_entry(self, key: str) -> CacheEntry | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        return entry

    def get(self, key: str) -> Any | None:
        entry = self._get_entry(key)
        return entry.value if entry else None

    def set(self, key: str, value: Any, ttl_seconds: float | None = None, version: Any = None) -> None:
        self.purge_expired()
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = CacheEntry(value, expires_at, version)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> None:
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if entry.expires_at is not None and entry.expires_at <= now]
        for key in expired:
            del self._entries[key]

    def __contains__(self, key: str) -> bool:
        return self._get_entry(key) is not None

    def clear(self) -> None:
        self._entries.clear()

    async def with_cache(
        self,
        key: str,
        fn: Callable[[], Awaitable[T]],
        ttl_seconds: float | None = None,
    ) -> T:
        """Return the cached value for ``key`` or compute, store and return it."""
        entry = self._get_entry(key)
        if entry is not None:
            return entry.value
        value = await fn()
        self.set(key, value, ttl_seconds)
        return value

    async def with_versioned_cache(
        self,
        key: str,
        version: Any,
        fn: Callable[[], Awaitable[T]],
        ttl_seconds: float | None = None,
    ) -> T:
        """Like ``with_cache``, but a value cached under another ``version`` is recomputed and replaced."""
        entry = self._get_entry(key)
        if entry is not None and entry.version == version:
            return entry.value
        value = await fn()
        self.set(key, value, ttl_seconds, version)
        return value
