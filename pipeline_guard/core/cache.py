"""
Tiered result cache.

Entries are classified by age into three freshness tiers:

- fresh: age < fresh_threshold, served as is
- stale: fresh_threshold <= age < stale_threshold, served and refreshed in
  the background through a low-priority prefetch
- expired: age >= stale_threshold (or past the entry TTL), removed and
  reported as a miss

Capacity is bounded by a frequency-weighted LRU: the entry with the lowest
(access_count, created_at) is evicted first, so hot but old entries survive.

The cache is best-effort. Storage failures and corrupt snapshots are logged
and treated as misses or no-ops, never raised into the pipeline.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

from pipeline_guard.config.loader import CacheConfig
from pipeline_guard.storage.repository import Storage
from .clock import Clock
from .errors import CacheCorruptionError, StorageError
from .metrics import MetricSink

logger = logging.getLogger(__name__)

STORAGE_PREFIX = "cache:"


class Freshness(Enum):
    """Freshness tier of a cache entry."""
    FRESH = "fresh"
    STALE = "stale"
    EXPIRED = "expired"


class Priority(IntEnum):
    """Prefetch priority; higher values are dispatched first."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3


class Prefetcher(Protocol):
    """Background refresher of cache keys."""

    def schedule(self, key: "CacheKey", priority: Priority) -> Any:
        ...

    def cancel(self, key: "CacheKey") -> bool:
        ...


@dataclass(frozen=True)
class CacheKey:
    """Composite cache key: category plus the variant of its result set.

    For story caches the variant is the result-set size.
    """
    category: str
    variant: str

    def __post_init__(self):
        if not self.category:
            raise ValueError("category is required")

    def __str__(self) -> str:
        return f"{self.category}_{self.variant}"

    @classmethod
    def for_stories(cls, category: str, limit: int) -> "CacheKey":
        return cls(category=category, variant=str(limit))


@dataclass
class CacheEntry:
    """A cached provider result.

    The payload is an immutable tuple; a refresh replaces the whole entry.
    Only `access_count` changes after the entry is written.
    """
    key: CacheKey
    payload: Tuple[Any, ...]
    created_at: float
    expires_at: float
    access_count: int = 0

    def __post_init__(self):
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        self.payload = tuple(self.payload)

    def age(self, now: float) -> float:
        return now - self.created_at


@dataclass(frozen=True)
class CacheHit:
    """A successful lookup with the entry's freshness at read time."""
    entry: CacheEntry
    freshness: Freshness

    @property
    def payload(self) -> Tuple[Any, ...]:
        return self.entry.payload


@dataclass
class CacheStats:
    """Cache performance metrics for dashboards."""
    hits: int = 0
    misses: int = 0
    hit_rate: float = 0.0
    total_entries: int = 0
    memory_usage: int = 0
    average_access_time: float = 0.0
    entries: List[Dict[str, Any]] = field(default_factory=list)


def _identity(item: Any) -> Any:
    return item


class TieredCache:
    """Key-addressed store of provider results with freshness tiers."""

    def __init__(
        self,
        clock: Clock,
        config: Optional[CacheConfig] = None,
        storage: Optional[Storage] = None,
        sink: Optional[MetricSink] = None,
        namespace: str = "stories",
        encode: Callable[[Any], Any] = _identity,
        decode: Callable[[Any], Any] = _identity,
    ):
        """Create the cache and reload non-expired durable entries.

        Args:
            clock: Time source
            config: Thresholds and capacity
            storage: Durable mirror of every entry, optional
            sink: Metric sink for maintenance reports, optional
            namespace: Storage namespace separating caches that share a store
            encode: Converts a payload item into a JSON-compatible value
            decode: Inverse of `encode`
        """
        self.clock = clock
        self.config = config or CacheConfig()
        self.storage = storage
        self.sink = sink
        self.namespace = namespace
        self._encode = encode
        self._decode = decode
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._prefetcher: Optional[Prefetcher] = None
        self._hits = 0
        self._misses = 0
        self._total_access_time = 0.0
        self._memory_usage = 0
        self._load_from_storage()

    def attach_prefetcher(self, prefetcher: Prefetcher) -> None:
        self._prefetcher = prefetcher

    # Freshness

    def classify(self, entry: CacheEntry, now: Optional[float] = None) -> Freshness:
        """Freshness tier of `entry`, a pure function of its age."""
        now = self.clock.now() if now is None else now
        age = entry.age(now)
        if now >= entry.expires_at or age >= self.config.stale_threshold:
            return Freshness.EXPIRED
        if age < self.config.fresh_threshold:
            return Freshness.FRESH
        return Freshness.STALE

    # Reads

    def get(self, key: CacheKey) -> Optional[CacheHit]:
        """Look up `key`, returning a CacheHit or None on a miss."""
        started = time.perf_counter()
        try:
            return self._get(key)
        except Exception:
            logger.exception("Cache read failed for %s, treating as miss", key)
            self._misses += 1
            return None
        finally:
            self._total_access_time += (time.perf_counter() - started) * 1000

    def _get(self, key: CacheKey) -> Optional[CacheHit]:
        entry = self._entries.get(key)
        if entry is None:
            self._misses += 1
            logger.debug("Cache miss for %s", key)
            self._schedule_prefetch(key, Priority.MEDIUM)
            return None

        freshness = self.classify(entry)
        if freshness is Freshness.EXPIRED:
            self._remove(key)
            self._misses += 1
            logger.debug("Cache expired for %s", key)
            self._schedule_prefetch(key, Priority.HIGH)
            return None

        entry.access_count += 1
        self._hits += 1
        logger.debug("Cache hit for %s (freshness: %s)", key, freshness.value)

        if freshness is Freshness.STALE:
            self._schedule_prefetch(key, Priority.LOW)
        return CacheHit(entry=entry, freshness=freshness)

    def _schedule_prefetch(self, key: CacheKey, priority: Priority) -> None:
        if self._prefetcher is None or not self.config.enable_prefetching:
            return
        try:
            self._prefetcher.schedule(key, priority)
        except Exception:
            logger.exception("Could not schedule prefetch for %s", key)

    def _cancel_prefetch(self, key: CacheKey) -> None:
        if self._prefetcher is None:
            return
        try:
            self._prefetcher.cancel(key)
        except Exception:
            logger.exception("Could not cancel prefetch for %s", key)

    # Writes

    def put(self, key: CacheKey, payload: Iterable[Any], ttl: Optional[float] = None) -> Optional[CacheEntry]:
        """Store a new entry for `key`, replacing any previous one.

        An empty payload is not cached. Returns the new entry, or None when
        nothing was stored.

        Raises:
            ValueError: If ttl is not positive
        """
        ttl = self.config.default_ttl if ttl is None else ttl
        if ttl <= 0:
            raise ValueError("ttl must be > 0")

        try:
            items = tuple(payload)
            if not items:
                return None

            now = self.clock.now()
            entry = CacheEntry(key=key, payload=items, created_at=now, expires_at=now + ttl)

            if key not in self._entries and len(self._entries) >= self.config.max_entries:
                self._evict_least_used()

            self._entries[key] = entry
            self._persist(entry)
            # a pending refresh of this key is now redundant
            self._cancel_prefetch(key)
            logger.info("Cached %d items for %s", len(items), key)
            return entry
        except Exception:
            logger.exception("Cache write failed for %s", key)
            return None

    def _evict_least_used(self) -> Optional[CacheKey]:
        if not self._entries:
            return None
        victim = min(
            self._entries.values(),
            key=lambda e: (e.access_count, e.created_at),
        )
        self._remove(victim.key)
        logger.info("Evicted least used cache entry: %s", victim.key)
        return victim.key

    def invalidate(self, key: CacheKey) -> bool:
        """Drop `key` from memory and storage. Returns whether it was cached."""
        present = key in self._entries
        self._remove(key)
        return present

    def force_refresh(self, key: CacheKey) -> None:
        """Drop `key` and schedule an immediate refresh of it."""
        self._remove(key)
        self._schedule_prefetch(key, Priority.HIGH)
        logger.info("Force refresh initiated for %s", key)

    def clear(self) -> None:
        """Remove every entry and reset hit statistics."""
        for key in list(self._entries):
            self._remove(key)
        if self.storage is not None:
            try:
                for storage_key in self.storage.list(self._storage_prefix()):
                    self.storage.delete(storage_key)
            except StorageError as e:
                logger.warning("Could not clear durable cache: %s", e)
        self._hits = 0
        self._misses = 0
        self._total_access_time = 0.0
        self._memory_usage = 0
        logger.info("Cache %s cleared", self.namespace)

    def _remove(self, key: CacheKey) -> None:
        self._entries.pop(key, None)
        if self.storage is None:
            return
        try:
            self.storage.delete(self._storage_key(key))
        except StorageError as e:
            logger.warning("Could not remove %s from storage: %s", key, e)

    # Maintenance

    def sweep(self) -> int:
        """Remove expired entries and report aggregate metrics. Returns entries removed."""
        now = self.clock.now()
        expired = [
            key for key, entry in self._entries.items()
            if self.classify(entry, now) is Freshness.EXPIRED
        ]
        for key in expired:
            self._remove(key)

        self._memory_usage = sum(self._estimate_size(e) for e in self._entries.values())
        if expired:
            logger.info("Cache maintenance: removed %d expired entries", len(expired))

        if self.sink is not None:
            self.sink.record_cache_performance(self._hits, self._misses)
            self.sink.record("cache_entries", len(self._entries), "count", {"cache": self.namespace})
            self.sink.record("cache_memory_usage", self._memory_usage, "bytes", {"cache": self.namespace})
        return len(expired)

    def _estimate_size(self, entry: CacheEntry) -> int:
        try:
            return len(json.dumps(self._serialize(entry)).encode("utf-8"))
        except (TypeError, ValueError):
            return len(repr(entry.payload))

    def get_stats(self) -> CacheStats:
        now = self.clock.now()
        total = self._hits + self._misses
        entries = [
            {
                "key": str(key),
                "category": key.category,
                "age": entry.age(now),
                "freshness": self.classify(entry, now).value,
                "access_count": entry.access_count,
                "size": self._estimate_size(entry),
            }
            for key, entry in self._entries.items()
        ]
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total if total else 0.0,
            total_entries=len(self._entries),
            memory_usage=self._memory_usage,
            average_access_time=self._total_access_time / total if total else 0.0,
            entries=entries,
        )

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    # Persistence

    def _storage_prefix(self) -> str:
        return f"{STORAGE_PREFIX}{self.namespace}:"

    def _storage_key(self, key: CacheKey) -> str:
        return f"{self._storage_prefix()}{key.category}:{key.variant}"

    def _serialize(self, entry: CacheEntry) -> Dict[str, Any]:
        return {
            "category": entry.key.category,
            "variant": entry.key.variant,
            "payload": [self._encode(item) for item in entry.payload],
            "created_at": entry.created_at,
            "expires_at": entry.expires_at,
        }

    def _deserialize(self, raw: str) -> CacheEntry:
        try:
            data = json.loads(raw)
            return CacheEntry(
                key=CacheKey(category=data["category"], variant=str(data["variant"])),
                payload=tuple(self._decode(item) for item in data["payload"]),
                created_at=float(data["created_at"]),
                expires_at=float(data["expires_at"]),
            )
        except Exception as e:
            raise CacheCorruptionError(str(e)) from e

    def _persist(self, entry: CacheEntry) -> None:
        if self.storage is None:
            return
        try:
            self.storage.set(self._storage_key(entry.key), json.dumps(self._serialize(entry)))
        except (StorageError, TypeError, ValueError) as e:
            logger.warning("Could not persist cache entry %s: %s", entry.key, e)

    def _load_from_storage(self) -> int:
        if self.storage is None:
            return 0
        try:
            stored = self.storage.list(self._storage_prefix())
        except StorageError as e:
            logger.warning("Could not load durable cache %s: %s", self.namespace, e)
            return 0

        now = self.clock.now()
        entries = []
        for storage_key, raw in stored.items():
            try:
                entry = self._deserialize(raw)
            except CacheCorruptionError:
                logger.debug("Dropping unreadable cache entry %s", storage_key)
                self._delete_quietly(storage_key)
                continue
            if self._storage_key(entry.key) != storage_key or self.classify(entry, now) is Freshness.EXPIRED:
                self._delete_quietly(storage_key)
                continue
            entries.append(entry)

        # newest first, so capacity keeps the most recent snapshots
        entries.sort(key=lambda e: e.created_at, reverse=True)
        for entry in entries[:self.config.max_entries]:
            self._entries[entry.key] = entry
        for entry in entries[self.config.max_entries:]:
            self._delete_quietly(self._storage_key(entry.key))

        if self._entries:
            logger.info("Loaded %d cache entries from storage", len(self._entries))
        return len(self._entries)

    def _delete_quietly(self, storage_key: str) -> None:
        try:
            self.storage.delete(storage_key)
        except StorageError as e:
            logger.warning("Could not delete %s from storage: %s", storage_key, e)
