"""TTL cache engine on top of the durable SQL store.

Expiration is lazy on read (an expired row is a miss and gets evicted) plus
an active sweep. The cache is a fail-soft optimization: storage failures
turn into misses and ``False``/``0``/``None`` results, never exceptions.
Bad arguments are the one thing that raises.
"""

import asyncio
import json
import math
import time
from dataclasses import dataclass
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union,
)

from core.config import Settings
from core.database import Database
from core.exceptions import InvalidCacheArgumentError, StorageUnavailableError
from core.lease import RedisLease
from core.logging import get_logger, log_cache_operation
from core.single_flight import KeyedLock, SingleFlight
from models.cache import CacheRecord, CacheStatistics

logger = get_logger(__name__)

T = TypeVar("T")

Number = Union[int, float]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


@dataclass
class WarmUpItem:
    """A key to pre-populate at startup."""
    key: str
    compute: Callable[[], Awaitable[Any]]
    ttl: Optional[float] = None
    tags: Optional[Sequence[str]] = None


class CacheService:
    """Async cache engine: get/set/delete, cache-aside with stampede
    protection, atomic set-if-absent and increment, tag invalidation,
    sweeping and statistics.

    ``clock`` returns epoch seconds and is read once per operation.
    """

    def __init__(self, settings: Settings, database: Database,
                 lease: Optional[RedisLease] = None,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.database = database
        self.lease = lease
        self._clock = clock
        self._flight = SingleFlight()
        self._locks = KeyedLock()
        self.hits = 0
        self.misses = 0

    async def startup(self):
        """Initialize the optional cross-instance lease."""
        if self.lease is not None:
            await self.lease.startup()
        logger.info("Cache service started",
                    default_ttl=self.settings.cache_ttl,
                    lease=self.lease is not None and self.lease.available)

    async def shutdown(self):
        await self._flight.cancel_all()
        if self.lease is not None:
            await self.lease.shutdown()
        logger.info("Cache service stopped", hits=self.hits, misses=self.misses)

    # ============================================================================
    # Argument validation
    # ============================================================================

    def _validate_key(self, key: Any) -> None:
        if not isinstance(key, str) or not key:
            raise InvalidCacheArgumentError("Cache key must be a non-empty string")
        if len(key) > self.settings.cache_key_max_length:
            raise InvalidCacheArgumentError(
                f"Cache key longer than {self.settings.cache_key_max_length} characters"
            )

    def _resolve_ttl(self, ttl: Optional[Number]) -> Number:
        if ttl is None:
            return self.settings.cache_ttl
        if not _is_number(ttl) or not math.isfinite(ttl) or ttl <= 0:
            raise InvalidCacheArgumentError(f"TTL must be a positive number of seconds, got {ttl!r}")
        return ttl

    @staticmethod
    def _validate_value(value: Any) -> None:
        if value is None:
            raise InvalidCacheArgumentError("None cannot be cached, it signals a miss")
        try:
            json.dumps(value)
        except (TypeError, ValueError) as e:
            raise InvalidCacheArgumentError(f"Value is not JSON-serializable: {e}") from e

    @staticmethod
    def _validate_tags(tags: Optional[Iterable[str]]) -> List[str]:
        if tags is None:
            return []
        if isinstance(tags, str):
            raise InvalidCacheArgumentError("Tags must be a collection of strings, not a string")
        tags = list(tags)
        if not all(isinstance(tag, str) and tag for tag in tags):
            raise InvalidCacheArgumentError("Tags must be non-empty strings")
        return tags

    @staticmethod
    def _validate_metadata(metadata: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if metadata is None:
            return {}
        if not isinstance(metadata, dict):
            raise InvalidCacheArgumentError("Metadata must be a dict")
        try:
            json.dumps(metadata)
        except (TypeError, ValueError) as e:
            raise InvalidCacheArgumentError(f"Metadata is not JSON-serializable: {e}") from e
        return metadata

    # ============================================================================
    # Core operations
    # ============================================================================

    async def _lookup(self, key: str, track: bool = True) -> Tuple[bool, Any]:
        """Hit check with bookkeeping and lazy eviction. Returns (hit, value)."""
        self._validate_key(key)
        now = self._clock()
        evicted = False
        try:
            record = await self.database.record_cache_hit(key, now)
            if record is None:
                evicted = await self.database.evict_expired_cache_entry(key, now)
        except StorageUnavailableError as e:
            logger.error("Cache get failed", key=key, error=str(e))
            record = None

        if track:
            if record is None:
                self.misses += 1
            else:
                self.hits += 1

        if record is None:
            log_cache_operation(logger, "get", key, hit=False, evicted=evicted)
            return False, None

        log_cache_operation(logger, "get", key, hit=True, access_count=record.access_count)
        return True, record.value

    async def get(self, key: str) -> Optional[Any]:
        """Get a live value, or None on miss, expiry or storage failure."""
        _, value = await self._lookup(key)
        return value

    async def has(self, key: str) -> bool:
        """Same as ``get`` (including hit bookkeeping) but returns a flag."""
        hit, _ = await self._lookup(key)
        return hit

    async def set(self, key: str, value: Any, ttl: Optional[Number] = None, *,
                  tags: Optional[Iterable[str]] = None,
                  metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Insert or fully overwrite ``key`` for ``ttl`` seconds.

        Overwriting resets ``created_at``, ``access_count``,
        ``last_accessed_at``, tags and metadata.
        """
        self._validate_key(key)
        ttl = self._resolve_ttl(ttl)
        self._validate_value(value)
        tags = self._validate_tags(tags)
        metadata = self._validate_metadata(metadata)

        now = self._clock()
        try:
            await self.database.upsert_cache_entry(key, value, now, now + ttl, tags, metadata)
        except StorageUnavailableError as e:
            logger.error("Cache set failed", key=key, error=str(e))
            return False

        log_cache_operation(logger, "set", key, ttl=ttl, tags=tags or None)
        return True

    async def delete(self, keys: Union[str, Iterable[str]]) -> bool:
        """Delete one key or a collection of keys. Missing keys are fine."""
        key_list = [keys] if isinstance(keys, str) else list(keys)
        if not key_list:
            raise InvalidCacheArgumentError("No cache keys given")
        for key in key_list:
            self._validate_key(key)

        try:
            deleted = await self.database.delete_cache_entries(key_list)
        except StorageUnavailableError as e:
            logger.error("Cache delete failed", keys=key_list, error=str(e))
            return False

        log_cache_operation(logger, "delete", ",".join(key_list), deleted=deleted)
        return True

    async def set_if_not_exists(self, key: str, value: Any, ttl: Optional[Number] = None, *,
                                tags: Optional[Iterable[str]] = None,
                                metadata: Optional[Dict[str, Any]] = None) -> bool:
        """Write only if no live entry exists. Returns True if this call wrote."""
        self._validate_key(key)
        ttl = self._resolve_ttl(ttl)
        self._validate_value(value)
        tags = self._validate_tags(tags)
        metadata = self._validate_metadata(metadata)

        now = self._clock()
        try:
            written = await self.database.insert_cache_entry_if_absent(
                key, value, now, now + ttl, tags, metadata
            )
        except StorageUnavailableError as e:
            logger.error("Cache set_if_not_exists failed", key=key, error=str(e))
            return False

        log_cache_operation(logger, "set_if_not_exists", key, ttl=ttl, written=written)
        return written

    async def increment(self, key: str, delta: Number = 1,
                        ttl: Optional[Number] = None) -> Optional[Number]:
        """Add ``delta`` to a numeric value and return the new value.

        A missing, expired or non-numeric value counts as 0. Every increment
        rewrites the entry, so the TTL window restarts each time. Returns
        None when the store is unavailable.
        """
        self._validate_key(key)
        ttl = self._resolve_ttl(ttl)
        if not _is_number(delta) or not math.isfinite(delta):
            raise InvalidCacheArgumentError(f"Increment must be a finite number, got {delta!r}")

        async with self._locks.hold(key):
            now = self._clock()
            try:
                record = await self.database.read_cache_entry(key)
                current = 0
                if record is not None and not record.is_expired(now) and _is_number(record.value):
                    current = record.value
                new_value = current + delta
                await self.database.upsert_cache_entry(key, new_value, now, now + ttl)
            except StorageUnavailableError as e:
                logger.error("Cache increment failed", key=key, error=str(e))
                return None

        log_cache_operation(logger, "increment", key, delta=delta, value=new_value)
        return new_value

    # ============================================================================
    # Cache-aside
    # ============================================================================

    async def get_or_set(self, key: str, compute: Callable[[], Awaitable[T]],
                         ttl: Optional[Number] = None, *,
                         tags: Optional[Iterable[str]] = None,
                         metadata: Optional[Dict[str, Any]] = None,
                         timeout: Optional[float] = None) -> T:
        """Return the cached value or compute, cache and return it.

        Concurrent misses on the same key share one ``compute`` call.
        ``timeout`` bounds this caller's wait only; the computation carries
        on for everyone else. Errors from ``compute`` reach every waiter of
        that round and are not cached.
        """
        self._validate_key(key)
        ttl = self._resolve_ttl(ttl)
        tags = self._validate_tags(tags)
        metadata = self._validate_metadata(metadata)

        hit, value = await self._lookup(key)
        if hit:
            return value

        return await self._flight.do(
            key,
            lambda: self._populate(key, compute, ttl, tags, metadata),
            timeout=timeout
        )

    async def _populate(self, key: str, compute: Callable[[], Awaitable[T]], ttl: Number,
                        tags: List[str], metadata: Dict[str, Any]) -> T:
        # A previous round may have finished between the caller's miss and this round
        hit, value = await self._lookup(key, track=False)
        if hit:
            return value

        token = None
        if self.lease is not None and self.lease.available:
            token = await self.lease.acquire(key)
            if token is None:
                hit, value = await self._wait_for_remote_population(key)
                if hit:
                    return value

        try:
            result = await compute()
            try:
                stored = await self.set(key, result, ttl, tags=tags, metadata=metadata)
            except InvalidCacheArgumentError as e:
                logger.warning("Computed value not cacheable", key=key, error=str(e))
                stored = False
            log_cache_operation(logger, "populate", key, stored=stored)
            return result
        finally:
            if token is not None:
                await self.lease.release(key, token)

    async def _wait_for_remote_population(self, key: str) -> Tuple[bool, Any]:
        """Poll the store while another instance holds the lease."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.cache_lease_wait
        while loop.time() < deadline:
            await asyncio.sleep(self.settings.cache_lease_poll_interval)
            hit, value = await self._lookup(key, track=False)
            if hit:
                return True, value
        logger.warning("Remote population not observed, computing locally", key=key)
        return False, None

    def waiting_on(self, key: str) -> int:
        """Callers subscribed to the in-flight population of ``key``."""
        return self._flight.in_flight(key)

    async def warm_up(self, items: Iterable[WarmUpItem]) -> int:
        """Pre-populate keys. Failures are logged and skipped."""
        warmed = 0
        for item in items:
            try:
                await self.get_or_set(item.key, item.compute, item.ttl, tags=item.tags)
                warmed += 1
            except Exception as e:
                logger.warning("Cache warm-up failed", key=item.key, error=str(e))
        logger.info("Cache warm-up completed", warmed=warmed)
        return warmed

    # ============================================================================
    # Bulk operations and maintenance
    # ============================================================================

    async def invalidate_by_tag(self, tag: str) -> int:
        """Delete every entry carrying ``tag``, expired or not."""
        if not isinstance(tag, str) or not tag:
            raise InvalidCacheArgumentError("Tag must be a non-empty string")
        try:
            removed = await self.database.delete_cache_entries_by_tag(tag)
        except StorageUnavailableError as e:
            logger.error("Cache tag invalidation failed", tag=tag, error=str(e))
            return 0
        log_cache_operation(logger, "invalidate_by_tag", tag, deleted=removed)
        return removed

    async def invalidate_pattern(self, pattern: str) -> int:
        """Delete every entry whose key matches a LIKE/glob pattern."""
        try:
            removed = await self.database.delete_cache_entries_matching(pattern)
        except StorageUnavailableError as e:
            logger.error("Cache clear pattern failed", pattern=pattern, error=str(e))
            return 0
        log_cache_operation(logger, "invalidate_pattern", pattern, deleted=removed)
        return removed

    async def sweep_expired(self) -> int:
        """Delete all entries expired now. Safe to run concurrently."""
        now = self._clock()
        try:
            removed = await self.database.delete_expired_cache_entries(now)
        except StorageUnavailableError as e:
            logger.error("Cache sweep failed", error=str(e))
            return 0
        if removed:
            logger.info("Cleaned up expired cache entries", count=removed)
        return removed

    async def clear(self) -> bool:
        """Remove everything. Administrative and test use only."""
        try:
            removed = await self.database.clear_cache_entries()
        except StorageUnavailableError as e:
            logger.error("Cache clear failed", error=str(e))
            return False
        logger.info("Cache cleared", count=removed)
        return True

    async def list_keys(self, pattern: str = "%") -> List[str]:
        """Physical keys matching ``pattern``; may include expired ones."""
        try:
            return await self.database.list_cache_keys_matching(pattern)
        except StorageUnavailableError as e:
            logger.error("Cache list keys failed", pattern=pattern, error=str(e))
            return []

    async def list_expired_keys(self) -> List[str]:
        try:
            return await self.database.list_expired_cache_keys(self._clock())
        except StorageUnavailableError as e:
            logger.error("Cache list expired keys failed", error=str(e))
            return []

    async def keys_for_tag(self, tag: str) -> List[str]:
        try:
            return await self.database.list_cache_keys_by_tag(tag)
        except StorageUnavailableError as e:
            logger.error("Cache list tag keys failed", tag=tag, error=str(e))
            return []

    async def describe(self, key: str) -> Optional[CacheRecord]:
        """Physical record with bookkeeping fields. Does not count as a hit."""
        self._validate_key(key)
        try:
            return await self.database.read_cache_entry(key)
        except StorageUnavailableError as e:
            logger.error("Cache describe failed", key=key, error=str(e))
            return None

    async def statistics(self) -> CacheStatistics:
        """Storage counts plus this process's hit/miss counters."""
        lookups = self.hits + self.misses
        stats = CacheStatistics(
            hits=self.hits,
            misses=self.misses,
            hit_ratio=round(self.hits / lookups, 4) if lookups else 0.0,
            in_flight=self._flight.in_flight(),
        )

        now = self._clock()
        try:
            total = await self.database.count_cache_entries()
            expired = await self.database.count_expired_cache_entries(now)
            total_accesses, average_accesses = await self.database.cache_access_totals()
        except StorageUnavailableError as e:
            logger.error("Cache statistics failed", error=str(e))
            return stats

        stats.total = total
        stats.expired = min(expired, total)
        stats.active = total - stats.expired
        stats.total_accesses = total_accesses
        stats.average_accesses = round(average_accesses, 2)
        return stats
