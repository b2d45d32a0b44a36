"""
Normalization Cache - two-tier cache for parse results

Tier A: in-process LRU (default 1000 entries, mutex-guarded)
Tier B: durable key-value store (90-day TTL per entry)

Key: SHA-256 of f"{raw_text.lower()}_{retailer.lower()}"

Cache Strategy:
1. First time seeing a line → rule or model resolves it → cached
2. Same line again (any upload, any household) → cache hit → free & instant
3. Hot entries are preloaded into memory at start (prewarm)

Hit counts and access times are updated in the background in both layers;
losing one of those updates is harmless.
"""
import hashlib
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import structlog

from packages.common.background import BackgroundTaskQueue
from packages.common.config import Settings
from packages.common.errors import CacheUnavailableError
from packages.common.kv_store import KeyValueStore
from packages.common.schemas.inventory import CacheEntry, NormalizedItem

logger = structlog.get_logger()


def generate_cache_key(raw_text: str, retailer: str) -> str:
    """Generate hash for fast lookups"""
    key = f"{raw_text.lower()}_{retailer.lower()}"
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


class BoundedLRU:
    """Least-recently-used map with a fixed capacity. Thread-safe."""

    def __init__(self, capacity: int):
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._data: "OrderedDict[str, Any]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            if key not in self._data:
                return None
            self._data.move_to_end(key)
            return self._data[key]

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._data[key] = value
            self._data.move_to_end(key)
            if len(self._data) > self.capacity:
                self._data.popitem(last=False)

    def update(self, key: str, fn: Callable[[Any], Any]) -> bool:
        """Replace a present value with fn(value), keeping its recency"""
        with self._lock:
            if key not in self._data:
                return False
            self._data[key] = fn(self._data[key])
            return True

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._data

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


class NormalizationCache:
    """
    Two-tier normalization cache.

    Durable store failures never reach the caller: reads degrade to a miss
    and writes are skipped, both with a logged warning.
    """

    def __init__(
        self,
        store: KeyValueStore,
        settings: Settings,
        background: Optional[BackgroundTaskQueue] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.store = store
        self.settings = settings
        self.memory = BoundedLRU(settings.cache_memory_capacity)
        self.background = background or BackgroundTaskQueue(settings.background_queue_size)
        self.clock = clock
        self.hits = 0
        self.misses = 0

    def contains_in_memory(self, raw_text: str, retailer: str) -> bool:
        return generate_cache_key(raw_text, retailer) in self.memory

    async def get(self, raw_text: str, retailer: str) -> Optional[CacheEntry]:
        """
        Look up a cached normalization.

        Args:
            raw_text: Raw line text from the CSV/receipt
            retailer: Retailer name (amazon, costco, ...)

        Returns:
            CacheEntry or None on miss
        """
        key = generate_cache_key(raw_text, retailer)

        entry = self.memory.get(key)
        if entry is not None:
            self.hits += 1
            logger.debug("cache_hit", layer="memory", retailer=retailer, raw_text=raw_text[:80])
            self.background.submit(self._touch(key), name="cache_touch")
            return entry

        try:
            doc = await self._read(key)
        except CacheUnavailableError as e:
            logger.warning("cache_read_failed", retailer=retailer, error=str(e))
            self.misses += 1
            return None

        if doc is None:
            self.misses += 1
            logger.debug("cache_miss", retailer=retailer, raw_text=raw_text[:80])
            return None

        try:
            entry = CacheEntry.model_validate(doc)
        except Exception as e:
            logger.warning("cache_entry_invalid", key=key, error=str(e))
            self.misses += 1
            return None

        self.memory.set(key, entry)
        self.hits += 1
        logger.debug("cache_hit", layer="durable", retailer=retailer, hit_count=entry.hit_count)
        self.background.submit(self._touch(key), name="cache_touch")
        return entry

    async def set(self, raw_text: str, retailer: str, normalized: NormalizedItem) -> CacheEntry:
        """Store a normalization in both layers"""
        key = generate_cache_key(raw_text, retailer)
        now = self.clock()

        entry = CacheEntry(
            key=key,
            raw_text=raw_text,
            retailer=retailer.lower(),
            normalized=normalized,
            hit_count=0,
            last_accessed_at=now,
            created_at=now,
            ttl_seconds=self.settings.cache_ttl_seconds,
        )

        self.memory.set(key, entry)

        try:
            await self._write(key, entry.model_dump(mode="json"), entry.ttl_seconds)
            logger.info("cache_set", retailer=retailer, canonical_name=normalized.canonical_name)
        except CacheUnavailableError as e:
            logger.warning("cache_write_failed", retailer=retailer, error=str(e))

        return entry

    async def _read(self, key: str) -> Optional[Dict[str, Any]]:
        try:
            return await self.store.get(key)
        except Exception as e:
            raise CacheUnavailableError(f"Durable cache read failed: {e}") from e

    async def _write(self, key: str, doc: Dict[str, Any], ttl_seconds: int) -> None:
        try:
            await self.store.put(key, doc, ttl_seconds=ttl_seconds)
        except Exception as e:
            raise CacheUnavailableError(f"Durable cache write failed: {e}") from e

    async def _top(self, limit: int) -> List[Dict[str, Any]]:
        try:
            return await self.store.top(limit, "hit_count")
        except Exception as e:
            raise CacheUnavailableError(f"Durable cache scan failed: {e}") from e

    async def _touch(self, key: str) -> None:
        """Increment hit count and access time in both layers (best effort)"""
        now = self.clock()
        self.memory.update(key, lambda entry: entry.model_copy(update={
            "hit_count": entry.hit_count + 1,
            "last_accessed_at": now,
        }))

        doc = await self._read(key)
        if doc is None:
            return
        doc["hit_count"] = int(doc.get("hit_count", 0)) + 1
        doc["last_accessed_at"] = now.isoformat()
        await self._write(key, doc, doc.get("ttl_seconds") or self.settings.cache_ttl_seconds)

    async def prewarm(self, limit: Optional[int] = None) -> int:
        """
        Preload the most-hit entries into memory.

        Returns:
            Number of entries loaded
        """
        limit = min(limit or self.settings.cache_memory_capacity, self.settings.cache_memory_capacity)
        try:
            docs = await self._top(limit)
        except CacheUnavailableError as e:
            logger.warning("cache_prewarm_failed", error=str(e))
            return 0

        loaded = 0
        # Insert coldest first so the hottest entries end up most recently used
        for doc in reversed(docs):
            try:
                entry = CacheEntry.model_validate(doc)
            except Exception as e:
                logger.warning("cache_entry_invalid", key=doc.get("key"), error=str(e))
                continue
            self.memory.set(entry.key, entry)
            loaded += 1

        logger.info("cache_prewarmed", loaded=loaded, capacity=self.memory.capacity)
        return loaded

    async def get_stats(self, top_n: int = 10) -> Dict[str, Any]:
        """Memory usage, process-local hit rate and the hottest entries"""
        total = self.hits + self.misses
        try:
            top_docs = await self._top(top_n)
        except CacheUnavailableError as e:
            logger.warning("cache_stats_failed", error=str(e))
            top_docs = []

        return {
            "memory_size": len(self.memory),
            "memory_capacity": self.memory.capacity,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hits / total, 4) if total else 0.0,
            "top_items": [
                {
                    "raw_text": doc.get("raw_text"),
                    "retailer": doc.get("retailer"),
                    "hit_count": doc.get("hit_count", 0),
                }
                for doc in top_docs
            ],
        }

    def clear_memory(self) -> None:
        """Drop the in-process layer (durable entries stay)"""
        self.memory.clear()
        logger.info("cache_memory_cleared")
