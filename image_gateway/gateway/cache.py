"""Response Cache — bounded key/value store with TTL, LRU eviction and byte accounting.

Entries expire a fixed TTL after they were stored (access does not extend
their life). When an insert would exceed either the byte budget or the entry
budget, least-recently-used entries are evicted until it fits; entries
touched at the same instant are evicted in insertion order.

Generated images are immutable once produced, so the cache never needs
external invalidation; the TTL only bounds memory and staleness.
"""

from __future__ import annotations

import hashlib
import json
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from image_gateway.core.metrics import CACHE_LOOKUPS
from image_gateway.gateway.background import PeriodicSweeper
from image_gateway.gateway.types import CacheEntry, CacheStats

logger = logging.getLogger(__name__)


def generate_key(parts: Sequence[str]) -> str:
    """Deterministic, order-sensitive fingerprint of *parts*.

    Each part is length-prefixed so ``["ab", "c"]`` and ``["a", "bc"]``
    produce different keys.
    """
    digest = hashlib.blake2b(digest_size=16)
    for part in parts:
        encoded = part.encode("utf-8")
        digest.update(len(encoded).to_bytes(8, "big"))
        digest.update(encoded)
    return digest.hexdigest()


def calculate_size(value: Any) -> int:
    """Serialized size of a cache value in bytes."""
    if isinstance(value, (bytes, bytearray, memoryview)):
        return len(value)
    if isinstance(value, str):
        return len(value.encode("utf-8"))
    size_hint = getattr(value, "size_bytes", None)
    if isinstance(size_hint, int):
        return size_hint
    return len(json.dumps(value, default=str).encode("utf-8"))


class ResponseCache:
    """LRU + TTL cache with byte-size accounting.

    Usage:
        cache = ResponseCache("image", max_size_bytes=50 * 1024 * 1024, max_entries=500, ttl_seconds=7200)
        key = cache.generate_key([prompt, service, user_id])
        cached = cache.get(key)
        if cached is None:
            cache.set(key, result)
    """

    def __init__(
        self,
        name: str,
        max_size_bytes: int = 100 * 1024 * 1024,
        max_entries: int = 1000,
        ttl_seconds: float = 3600.0,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.max_size_bytes = max_size_bytes
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock

        # Ordered oldest-access first; the head is the LRU victim
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._current_size = 0

        self._hits = 0
        self._misses = 0
        self._evictions = 0

        self._sweeper = PeriodicSweeper(f"cache:{name}", self.cleanup, sweep_interval)

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        self._sweeper.start()

    async def close(self) -> None:
        await self._sweeper.stop()

    # -- keys --------------------------------------------------------------

    @staticmethod
    def generate_key(parts: Sequence[str]) -> str:
        return generate_key(parts)

    # -- core operations ---------------------------------------------------

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def _remove(self, key: str) -> CacheEntry | None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._current_size -= entry.size_bytes
        return entry

    def get(self, key: str) -> Any | None:
        """Return the cached value, or None on miss/expiry."""
        entry = self._entries.get(key)
        now = self._clock()

        if entry is None or self._is_expired(entry, now):
            if entry is not None:
                self._remove(key)
            self._misses += 1
            CACHE_LOOKUPS.labels(cache=self.name, result="miss").inc()
            logger.debug("Cache %s MISS %s", self.name, key)
            return None

        entry.access_count += 1
        entry.last_accessed_at = now
        self._entries.move_to_end(key)
        self._hits += 1
        CACHE_LOOKUPS.labels(cache=self.name, result="hit").inc()
        logger.debug("Cache %s HIT %s", self.name, key)
        return entry.value

    def set(self, key: str, value: Any) -> bool:
        """Store *value* under *key*, evicting LRU entries to make room.

        Returns False (and stores nothing) if the value alone exceeds the
        byte budget.
        """
        size = calculate_size(value)
        if size > self.max_size_bytes:
            logger.warning(
                "Cache %s refused %s: %d bytes exceeds budget of %d",
                self.name,
                key,
                size,
                self.max_size_bytes,
            )
            return False

        # Replace rather than duplicate
        self._remove(key)
        self._make_space(size)

        now = self._clock()
        self._entries[key] = CacheEntry(
            key=key,
            value=value,
            created_at=now,
            last_accessed_at=now,
            access_count=1,
            size_bytes=size,
        )
        self._current_size += size

        logger.debug(
            "Cache %s SET %s (size=%d, total=%d, entries=%d)",
            self.name,
            key,
            size,
            self._current_size,
            len(self._entries),
        )
        return True

    def _make_space(self, required_size: int) -> None:
        while self._entries and self._current_size + required_size > self.max_size_bytes:
            self._evict_lru()
        while self._entries and len(self._entries) >= self.max_entries:
            self._evict_lru()

    def _evict_lru(self) -> None:
        key, entry = self._entries.popitem(last=False)
        self._current_size -= entry.size_bytes
        self._evictions += 1
        logger.debug("Cache %s evicted %s (LRU, size=%d)", self.name, key, entry.size_bytes)

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None:
            return False
        if self._is_expired(entry, self._clock()):
            self._remove(key)
            return False
        return True

    def delete(self, key: str) -> bool:
        return self._remove(key) is not None

    def clear(self) -> None:
        cleared_count = len(self._entries)
        cleared_size = self._current_size
        self._entries.clear()
        self._current_size = 0
        logger.info("Cache %s cleared (%d entries, %d bytes)", self.name, cleared_count, cleared_size)

    def cleanup(self) -> int:
        """Remove every TTL-expired entry. Returns the number removed."""
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if self._is_expired(entry, now)]
        cleaned_size = 0
        for key in expired:
            entry = self._remove(key)
            if entry is not None:
                cleaned_size += entry.size_bytes

        if expired:
            logger.info(
                "Cache %s cleanup removed %d entries (%d bytes), %d remaining",
                self.name,
                len(expired),
                cleaned_size,
                len(self._entries),
            )
        return len(expired)

    def preload(self, items: Iterable[tuple[str, Any]]) -> int:
        count = 0
        for key, value in items:
            if self.set(key, value):
                count += 1
        logger.info("Cache %s preloaded %d entries", self.name, count)
        return count

    # -- introspection -----------------------------------------------------

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def current_size(self) -> int:
        return self._current_size

    def get_stats(self) -> CacheStats:
        total = self._hits + self._misses
        return CacheStats(
            entry_count=len(self._entries),
            total_size_bytes=self._current_size,
            hit_rate=self._hits / total if total else 0.0,
            miss_rate=self._misses / total if total else 0.0,
            eviction_count=self._evictions,
        )

    def reset_stats(self) -> None:
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def get_info(self) -> dict:
        """Stats plus per-entry detail, most accessed first."""
        now = self._clock()
        entries = [
            {
                "key": key,
                "size_bytes": entry.size_bytes,
                "age_seconds": round(now - entry.created_at, 3),
                "access_count": entry.access_count,
                "last_accessed_at": entry.last_accessed_at,
            }
            for key, entry in self._entries.items()
        ]
        entries.sort(key=lambda e: e["access_count"], reverse=True)
        return {
            **self.get_stats().to_dict(),
            "name": self.name,
            "max_size_bytes": self.max_size_bytes,
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "entries": entries,
        }


@dataclass
class CacheRegistry:
    """The three independent cache instances used by the gateway.

    - image: generated artifacts keyed by request fingerprint
    - prompt: enhanced prompt text keyed by (prompt, service)
    - session: recent generation records per identity
    """

    image: ResponseCache
    prompt: ResponseCache
    session: ResponseCache

    def all(self) -> list[ResponseCache]:
        return [self.image, self.prompt, self.session]

    def start(self) -> None:
        for cache in self.all():
            cache.start()

    async def close(self) -> None:
        for cache in self.all():
            await cache.close()

    def clear(self) -> None:
        for cache in self.all():
            cache.clear()

    def get_stats(self) -> dict:
        return {cache.name: cache.get_stats().to_dict() for cache in self.all()}

    @classmethod
    def from_settings(cls, settings, clock: Callable[[], float] = time.monotonic) -> CacheRegistry:
        interval = settings.cache_sweep_interval_seconds
        return cls(
            image=ResponseCache(
                "image",
                max_size_bytes=settings.image_cache_max_bytes,
                max_entries=settings.image_cache_max_entries,
                ttl_seconds=settings.image_cache_ttl_seconds,
                sweep_interval=interval,
                clock=clock,
            ),
            prompt=ResponseCache(
                "prompt",
                max_size_bytes=settings.prompt_cache_max_bytes,
                max_entries=settings.prompt_cache_max_entries,
                ttl_seconds=settings.prompt_cache_ttl_seconds,
                sweep_interval=interval,
                clock=clock,
            ),
            session=ResponseCache(
                "session",
                max_size_bytes=settings.session_cache_max_bytes,
                max_entries=settings.session_cache_max_entries,
                ttl_seconds=settings.session_cache_ttl_seconds,
                sweep_interval=interval,
                clock=clock,
            ),
        )
