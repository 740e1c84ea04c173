"""
Main cache orchestration: per-type TTL, LRU eviction, request deduplication,
batch reads and an optional persistent mirror.
"""
import copy
import itertools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from .batch import BatchFetcher
from .coalescer import RequestCoalescer
from .core import (
    MISSING,
    CacheEntry,
    CacheEvent,
    CacheEventKind,
    DataType,
    WarmResult,
    estimate_size,
    full_key as make_full_key,
)
from .events import CacheEventBus, Listener
from .maintenance import MaintenanceScheduler
from .persistence import PersistenceBridge
from .ttl_policies import TTL_CONFIG, TypeConfig, get_type_config

logger = logging.getLogger("cache.store")


class CacheStore:
    """
    Process-wide keyed cache owned by whoever creates it.

    - Lazy TTL expiry on read, plus an optional periodic sweep
    - LRU eviction per data type, ties broken by insertion order
    - Single-flight fetches per full key ("<data_type>:<key>")
    - Payloads are deep-copied on the way in and on the way out

    Every mutation of the entry map, the counters and the pending-request
    registry happens under one re-entrant lock, together with the matching
    write or purge of the persistent mirror. Only the caller-supplied fetch
    functions run outside it.
    """

    def __init__(
        self,
        type_configs: Optional[Mapping[DataType, TypeConfig]] = None,
        persistence: Optional[PersistenceBridge] = None,
        clock: Callable[[], float] = time.time,
        event_bus: Optional[CacheEventBus] = None,
    ):
        """
        Initialize the cache store.

        Args:
            type_configs: Per data type overrides merged over TTL_CONFIG
            persistence: Mirror to seed from and write through to
            clock: Epoch-seconds clock (injectable for tests)
            event_bus: Channel for change notifications
        """
        self._configs: Dict[DataType, TypeConfig] = dict(TTL_CONFIG)
        if type_configs:
            self._configs.update(type_configs)

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self._coalescer = RequestCoalescer(lock=self._lock)
        self._persistence = persistence
        self._clock = clock
        self._events = event_bus or CacheEventBus()
        self._sequence = itertools.count()
        self._maintenance: Optional[MaintenanceScheduler] = None
        self._disposed = False

        self._stats = self._empty_stats()

        if self._persistence is not None:
            self._load_persisted()

    @staticmethod
    def _empty_stats() -> Dict[str, int]:
        return {
            "requests": 0,
            "hits": 0,
            "misses": 0,
            "saved_reads": 0,
            "evictions": 0,
            "expirations": 0,
        }

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, key: str, data_type: DataType, fetch_fn: Callable[[], Any]) -> Any:
        """
        Get data from cache or fetch it.

        Args:
            key: Cache key within the data type
            data_type: Selects TTL and LRU bound
            fetch_fn: Remote read, called at most once across concurrent callers

        Returns:
            A copy of the cached or fetched value (None results are not cached)

        Raises:
            Whatever fetch_fn raised, to the initiator and every waiter alike
        """
        fk = make_full_key(key, data_type)
        events: List[CacheEvent] = []
        prepared: List[Tuple[Any, int, float]] = []

        with self._lock:
            self._stats["requests"] += 1

        def lookup() -> Any:
            entry = self._live_entry(fk, events)
            if entry is None:
                return MISSING
            self._stats["hits"] += 1
            entry.last_accessed_at = self._clock()
            logger.debug(f"CACHE HIT: {fk}")
            return entry.data

        def fetch() -> Any:
            logger.info(f"CACHE MISS: {fk}")
            with self._lock:
                self._stats["misses"] += 1
            started = time.perf_counter()
            data = fetch_fn()
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.debug(f"Remote read for {fk}: {elapsed_ms:.0f}ms")
            if data is not None:
                prepared.append((copy.deepcopy(data), estimate_size(data), self._clock()))
            return data

        def store(data: Any) -> None:
            if prepared:
                stored, size, now = prepared[0]
                events.extend(self._insert_locked(key, data_type, stored, size, now))
                if self._persistence is not None:
                    self._persistence.save(fk, stored, data_type, now)

        data = self._coalescer.get_or_fetch(fk, fetch, lookup=lookup, on_result=store)

        self._publish(events)
        return copy.deepcopy(data)

    def peek(self, key: str, data_type: DataType) -> Any:
        """
        Return a copy of a live entry without fetching.

        Counts as a hit or a miss. Returns MISSING when absent or expired.
        """
        fk = make_full_key(key, data_type)
        events: List[CacheEvent] = []
        with self._lock:
            self._stats["requests"] += 1
            entry = self._live_entry(fk, events)
            if entry is None:
                self._stats["misses"] += 1
                data = MISSING
            else:
                self._stats["hits"] += 1
                entry.last_accessed_at = self._clock()
                data = entry.data
        self._publish(events)
        return data if data is MISSING else copy.deepcopy(data)

    def contains(self, key: str, data_type: DataType) -> bool:
        """True if an unexpired entry exists. Does not touch stats or access time."""
        fk = make_full_key(key, data_type)
        with self._lock:
            entry = self._entries.get(fk)
            if entry is None:
                return False
            return not entry.is_expired(self._config_for(data_type).ttl_seconds, self._clock())

    def get_batch(
        self,
        keys: Iterable[str],
        data_type: DataType,
        batch_fetch_fn: Callable[[List[str]], Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """
        Resolve many keys with at most one bulk read for the uncached ones.

        Keys absent from the bulk result are omitted, not treated as errors.
        """
        return BatchFetcher(self).resolve(keys, data_type, batch_fetch_fn)

    def warm(
        self,
        keys: Iterable[str],
        data_type: DataType,
        fetch_fn: Callable[[str], Any],
        max_workers: int = 4,
    ) -> List[WarmResult]:
        """
        Predictively load keys that are not cached yet.

        Per-key failures are reported in the results rather than raised.
        """
        unique_keys = list(dict.fromkeys(keys))
        logger.info(f"Warming cache for {data_type.value} with {len(unique_keys)} items")

        results: List[WarmResult] = []
        to_fetch = []
        for key in unique_keys:
            if self.contains(key, data_type):
                results.append(WarmResult(key=key, success=True, from_cache=True))
            else:
                to_fetch.append(key)

        if to_fetch:
            with ThreadPoolExecutor(
                max_workers=max(1, min(max_workers, len(to_fetch))),
                thread_name_prefix="cache-warm",
            ) as executor:
                futures = {
                    executor.submit(self.get, key, data_type, lambda k=key: fetch_fn(k)): key
                    for key in to_fetch
                }
                for future in as_completed(futures):
                    key = futures[future]
                    try:
                        future.result()
                        results.append(WarmResult(key=key, success=True))
                    except Exception as e:
                        logger.warning(f"Cache warming failed for {make_full_key(key, data_type)}: {e}")
                        results.append(WarmResult(key=key, success=False, error=str(e)))

        successful = sum(1 for r in results if r.success)
        logger.info(f"Cache warming completed: {successful}/{len(unique_keys)} items loaded")
        return results

    # =========================================================================
    # Writes
    # =========================================================================

    def set(self, key: str, data: Any, data_type: DataType, persist: bool = False) -> None:
        """
        Insert or overwrite an entry, then enforce the type's LRU bound.

        Args:
            key: Cache key within the data type
            data: Payload (copied)
            data_type: Selects TTL and LRU bound
            persist: Also mirror the entry to persistent storage
        """
        stored = copy.deepcopy(data)
        size = estimate_size(stored)
        now = self._clock()
        with self._lock:
            events = self._insert_locked(key, data_type, stored, size, now)
            if persist and self._persistence is not None:
                self._persistence.save(make_full_key(key, data_type), stored, data_type, now)
        self._publish(events)

    def invalidate(self, pattern: str, data_type: Optional[DataType] = None) -> int:
        """
        Invalidate all cache entries whose full key contains a pattern.

        Args:
            pattern: Substring to match in full keys ("" matches everything)
            data_type: Restrict to one data type

        Returns:
            Number of in-memory entries invalidated
        """
        with self._lock:
            to_delete = [
                fk for fk, entry in self._entries.items()
                if (data_type is None or entry.data_type == data_type) and pattern in fk
            ]
            events = []
            for fk in to_delete:
                entry = self._entries.pop(fk)
                events.append(CacheEvent(CacheEventKind.INVALIDATED, entry.key, entry.data_type))
            if self._persistence is not None:
                self._persistence.purge(pattern, data_type)

        if to_delete:
            logger.info(f"Invalidated {len(to_delete)} entries matching '{pattern}'")
        self._publish(events)
        return len(to_delete)

    def clear(self) -> int:
        """
        Clear all cache entries, including persisted ones.

        In-flight fetches are left to settle on their own.

        Returns:
            Number of entries cleared
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            if self._persistence is not None:
                self._persistence.clear()
        logger.info(f"Cleared {count} cache entries")
        return count

    def record_saved_reads(self, count: int) -> None:
        """Account for remote reads avoided by a bulk fetch."""
        if count > 0:
            with self._lock:
                self._stats["saved_reads"] += count

    # =========================================================================
    # Maintenance
    # =========================================================================

    def cleanup_expired(self) -> int:
        """
        Proactively remove expired entries.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        events = []
        with self._lock:
            expired = [
                fk for fk, entry in self._entries.items()
                if entry.is_expired(self._config_for(entry.data_type).ttl_seconds, now)
            ]
            for fk in expired:
                entry = self._entries.pop(fk)
                events.append(CacheEvent(CacheEventKind.EXPIRED, entry.key, entry.data_type))
            self._stats["expirations"] += len(expired)

        if expired:
            logger.info(f"Cleaned {len(expired)} expired cache entries")
        self._publish(events)
        return len(expired)

    def report(self) -> Dict[str, Any]:
        """
        Log hit rate, size and eviction metrics, then reset the counters.

        Returns:
            The metrics that were logged
        """
        with self._lock:
            stats = dict(self._stats)
            total_items = len(self._entries)
            total_size = sum(entry.size_estimate for entry in self._entries.values())
            self._stats = self._empty_stats()

        hit_rate = (stats["hits"] / stats["requests"] * 100) if stats["requests"] > 0 else 0
        logger.info(
            f"Cache stats: {total_items} items, {total_size / 1024:.2f}KB, "
            f"{hit_rate:.2f}% hit rate, {stats['evictions']} evictions, "
            f"{stats['saved_reads']} remote reads saved"
        )
        return {
            **stats,
            "entries": total_items,
            "total_size_bytes": total_size,
            "hit_rate_percent": round(hit_rate, 2),
        }

    def start_maintenance(self, cleanup_interval: float, report_interval: float) -> None:
        """Start the background sweep/report thread (idempotent)."""
        with self._lock:
            if self._maintenance is not None or self._disposed:
                return
            self._maintenance = MaintenanceScheduler(
                cleanup_fn=self.cleanup_expired,
                report_fn=self.report,
                cleanup_interval=cleanup_interval,
                report_interval=report_interval,
            )
        self._maintenance.start()

    def dispose(self) -> None:
        """Stop maintenance and release in-memory state. Persisted entries stay."""
        with self._lock:
            scheduler = self._maintenance
            self._maintenance = None
            self._disposed = True
        if scheduler is not None:
            scheduler.stop()
        with self._lock:
            self._entries.clear()
        self._events.clear()
        logger.debug("Cache store disposed")

    def __enter__(self) -> "CacheStore":
        return self

    def __exit__(self, *exc_info) -> None:
        self.dispose()

    # =========================================================================
    # Observation
    # =========================================================================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns the unsubscribe function."""
        return self._events.subscribe(listener)

    @property
    def events(self) -> CacheEventBus:
        return self._events

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            stats = dict(self._stats)
            type_breakdown: Dict[str, int] = {}
            total_size = 0
            for entry in self._entries.values():
                name = entry.data_type.value
                type_breakdown[name] = type_breakdown.get(name, 0) + 1
                total_size += entry.size_estimate
            hit_rate = (stats["hits"] / stats["requests"] * 100) if stats["requests"] > 0 else 0

            return {
                "entries": len(self._entries),
                "pending_requests": self._coalescer.active_requests,
                "metrics": stats,
                "hit_rate_percent": round(hit_rate, 1),
                "total_size_bytes": total_size,
                "type_breakdown": type_breakdown,
                "coalescer": self._coalescer.get_stats(),
                "persistence_enabled": self._persistence is not None,
                "maintenance_running": self._maintenance is not None,
            }

    def type_config(self, data_type: DataType) -> TypeConfig:
        return self._config_for(data_type)

    # =========================================================================
    # Internals (call with the lock held)
    # =========================================================================

    def _config_for(self, data_type: DataType) -> TypeConfig:
        return get_type_config(data_type, self._configs)

    def _live_entry(self, fk: str, events: List[CacheEvent]) -> Optional[CacheEntry]:
        entry = self._entries.get(fk)
        if entry is None:
            return None
        if entry.is_expired(self._config_for(entry.data_type).ttl_seconds, self._clock()):
            del self._entries[fk]
            self._stats["expirations"] += 1
            events.append(CacheEvent(CacheEventKind.EXPIRED, entry.key, entry.data_type))
            logger.debug(f"CACHE EXPIRED: {fk}")
            return None
        return entry

    def _insert_locked(
        self,
        key: str,
        data_type: DataType,
        data: Any,
        size: int,
        now: float,
    ) -> List[CacheEvent]:
        fk = make_full_key(key, data_type)
        self._entries.pop(fk, None)
        self._entries[fk] = CacheEntry(
            key=key,
            data_type=data_type,
            data=data,
            stored_at=now,
            last_accessed_at=now,
            size_estimate=size,
            sequence=next(self._sequence),
        )
        events = [CacheEvent(CacheEventKind.SET, key, data_type, data)]
        events.extend(self._evict_locked(data_type))
        return events

    def _evict_locked(self, data_type: DataType) -> List[CacheEvent]:
        max_items = self._config_for(data_type).max_items
        same_type = [e for e in self._entries.values() if e.data_type == data_type]
        overflow = len(same_type) - max_items
        if overflow <= 0:
            return []

        same_type.sort(key=lambda e: (e.last_accessed_at, e.sequence))
        events = []
        for entry in same_type[:overflow]:
            del self._entries[entry.full_key]
            events.append(CacheEvent(CacheEventKind.EVICTED, entry.key, entry.data_type))
        self._stats["evictions"] += overflow
        logger.info(f"Evicted {overflow} LRU entries for {data_type.value}")
        return events

    def _load_persisted(self) -> None:
        entries = self._persistence.load_all(now=self._clock(), type_configs=self._configs)
        with self._lock:
            touched = set()
            for entry in entries:
                entry.sequence = next(self._sequence)
                self._entries[entry.full_key] = entry
                touched.add(entry.data_type)
            for data_type in touched:
                self._evict_locked(data_type)

    def _publish(self, events: List[CacheEvent]) -> None:
        if not events or self._events.listener_count == 0:
            return
        for event in events:
            if event.data is not None:
                event = CacheEvent(event.kind, event.key, event.data_type, copy.deepcopy(event.data))
            self._events.publish(event)
