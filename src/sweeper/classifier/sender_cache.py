"""Sender reputation cache.

Remembers how a sender's mail was classified for a user so later scans can
skip the LLM for that sender. Entries expire after a TTL and their
confidence decays with age:

    decayed = max(0, confidence - min(max_decay, decay_per_day * age_days))

Storage is pluggable through the SenderCacheBackend protocol:
- SqliteSenderCacheBackend: persistent, shared by every process using the database
- InMemorySenderCacheBackend: per-process, bounded, least recently used evicted

The backend is chosen once at construction (see `build_sender_cache`).

Usage:
    from sweeper.classifier.sender_cache import SenderReputationCache, build_sender_cache

    cache = build_sender_cache(config.cache, store)
    hit = await cache.lookup("user-1", "news@example.com")
    if hit and hit.confidence >= 0.85:
        ...
"""

import asyncio
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from sweeper.config_schema import CacheConfig
from sweeper.core.logging import get_logger
from sweeper.db.store import DatabaseStore, SenderCacheEntry

logger = get_logger(__name__)

DEFAULT_TTL_DAYS = 30
DEFAULT_DECAY_PER_DAY = 0.002
DEFAULT_MAX_DECAY = 0.05
DEFAULT_MEMORY_MAX_ENTRIES = 10000


def decayed_confidence(
    confidence: float,
    age: timedelta,
    decay_per_day: float = DEFAULT_DECAY_PER_DAY,
    max_decay: float = DEFAULT_MAX_DECAY,
) -> float:
    """Confidence after age-based decay.

    Non-increasing in age, never more than `max_decay` below the stored
    value, never below zero. Negative ages (clock skew) count as zero.
    """
    age_days = max(0.0, age.total_seconds() / 86400)
    decay = min(max_decay, decay_per_day * age_days)
    return max(0.0, confidence - decay)


@dataclass(frozen=True, slots=True)
class CachedReputation:
    """Cache hit with confidence already decayed."""

    sender_address: str
    category: str
    confidence: float
    source: str
    cached_at: datetime


class SenderCacheBackend(Protocol):
    """Storage for raw (undecayed) cache entries keyed by (user, sender)."""

    async def get(self, user_id: str, sender_address: str) -> SenderCacheEntry | None: ...

    async def put(self, entry: SenderCacheEntry) -> None: ...

    async def delete(self, user_id: str, sender_address: str) -> None: ...


class SqliteSenderCacheBackend:
    """Persistent backend stored in the `sender_cache` table."""

    def __init__(self, store: DatabaseStore):
        self._store = store

    async def get(self, user_id: str, sender_address: str) -> SenderCacheEntry | None:
        return await self._store.get_sender_cache_entry(user_id, sender_address)

    async def put(self, entry: SenderCacheEntry) -> None:
        await self._store.upsert_sender_cache_entry(entry)

    async def delete(self, user_id: str, sender_address: str) -> None:
        await self._store.delete_sender_cache_entry(user_id, sender_address)


class InMemorySenderCacheBackend:
    """Bounded per-process backend. Least recently used entries are evicted."""

    def __init__(self, max_entries: int = DEFAULT_MEMORY_MAX_ENTRIES):
        self._max_entries = max_entries
        self._entries: OrderedDict[tuple[str, str], SenderCacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def get(self, user_id: str, sender_address: str) -> SenderCacheEntry | None:
        async with self._lock:
            key = (user_id, sender_address)
            entry = self._entries.get(key)
            if entry is not None:
                self._entries.move_to_end(key)
            return entry

    async def put(self, entry: SenderCacheEntry) -> None:
        async with self._lock:
            key = (entry.user_id, entry.sender_address)
            self._entries[key] = entry
            self._entries.move_to_end(key)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=False)

    async def delete(self, user_id: str, sender_address: str) -> None:
        async with self._lock:
            self._entries.pop((user_id, sender_address), None)


class SenderReputationCache:
    """TTL and decay policy over a SenderCacheBackend.

    Attributes:
        ttl: Entries older than this are treated as missing
        decay_per_day: Confidence lost per day of age
        max_decay: Upper bound on total decay
    """

    def __init__(
        self,
        backend: SenderCacheBackend,
        ttl_days: int = DEFAULT_TTL_DAYS,
        decay_per_day: float = DEFAULT_DECAY_PER_DAY,
        max_decay: float = DEFAULT_MAX_DECAY,
        clock: Callable[[], datetime] | None = None,
    ):
        self._backend = backend
        self.ttl = timedelta(days=ttl_days)
        self.decay_per_day = decay_per_day
        self.max_decay = max_decay
        self._clock = clock or (lambda: datetime.now(UTC))

    async def lookup(self, user_id: str, sender_address: str) -> CachedReputation | None:
        """Return the decayed entry, or None when missing or expired."""
        address = sender_address.lower()
        entry = await self._backend.get(user_id, address)
        if entry is None:
            return None

        age = self._clock() - entry.cached_at
        if age > self.ttl:
            return None

        return CachedReputation(
            sender_address=address,
            category=entry.category,
            confidence=decayed_confidence(
                entry.confidence, age, self.decay_per_day, self.max_decay
            ),
            source=entry.source,
            cached_at=entry.cached_at,
        )

    async def store(
        self, user_id: str, sender_address: str, category: str, confidence: float, source: str
    ) -> None:
        """Overwrite the entry for a sender with a fresh classification."""
        await self._backend.put(
            SenderCacheEntry(
                user_id=user_id,
                sender_address=sender_address.lower(),
                category=category,
                confidence=max(0.0, min(1.0, confidence)),
                source=source,
                cached_at=self._clock(),
            )
        )

    async def invalidate(self, user_id: str, sender_address: str) -> None:
        await self._backend.delete(user_id, sender_address.lower())


def build_sender_cache(
    config: CacheConfig,
    store: DatabaseStore,
    clock: Callable[[], datetime] | None = None,
) -> SenderReputationCache:
    """Create the cache with the backend named in config."""
    backend: SenderCacheBackend
    if config.backend == "memory":
        backend = InMemorySenderCacheBackend(max_entries=config.memory_max_entries)
    else:
        backend = SqliteSenderCacheBackend(store)

    logger.debug("sender_cache_backend_selected", backend=config.backend)
    return SenderReputationCache(
        backend,
        ttl_days=config.ttl_days,
        decay_per_day=config.decay_per_day,
        max_decay=config.max_decay,
        clock=clock,
    )
