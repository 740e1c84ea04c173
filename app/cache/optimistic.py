"""
Optimistic mutations with snapshot rollback.

The speculative state is visible to readers as soon as it is computed. A
successful remote write invalidates the aggregate so the next read is
authoritative; a failed one restores the snapshot and re-raises.
"""
import copy
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Generic, Iterator, TypeVar

from .core import CacheEvent, CacheEventKind, DataType
from .store import CacheStore

logger = logging.getLogger("cache.optimistic")

S = TypeVar("S")


@dataclass
class MutationResult(Generic[S]):
    """Outcome of a confirmed mutation."""
    speculative: S
    remote_result: Any = None


@dataclass
class _AggregateLock:
    """Lock for one aggregate plus the number of holders and waiters."""
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class OptimisticMutator:
    """
    Applies speculative transitions to cached aggregates.

    Mutations on the same aggregate are serialized; different aggregates
    proceed in parallel. Nothing here touches UI state: observers learn
    about changes through the cache's event channel.
    """

    def __init__(self, store: CacheStore):
        self._store = store
        self._locks: Dict[str, _AggregateLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def _aggregate_lock(self, data_type: DataType, aggregate_key: str) -> Iterator[None]:
        """Hold the aggregate's lock; it is dropped once nobody holds or waits for it."""
        name = f"{data_type.value}:{aggregate_key}"
        with self._locks_guard:
            slot = self._locks.get(name)
            if slot is None:
                slot = _AggregateLock()
                self._locks[name] = slot
            slot.users += 1
        try:
            with slot.lock:
                yield
        finally:
            with self._locks_guard:
                slot.users -= 1
                if slot.users == 0:
                    del self._locks[name]

    @property
    def active_aggregates(self) -> int:
        """Aggregates with a mutation running or waiting."""
        with self._locks_guard:
            return len(self._locks)

    def mutate(
        self,
        aggregate_key: str,
        data_type: DataType,
        fetch_fn: Callable[[], S],
        transform_fn: Callable[[S], S],
        remote_write_fn: Callable[[S], Any],
    ) -> MutationResult[S]:
        """
        Apply a speculative change, confirm it remotely, reconcile or roll back.

        Args:
            aggregate_key: Cache key of the aggregate (e.g. "cart:42")
            data_type: Data type of the aggregate
            fetch_fn: Reads the aggregate when it is not cached
            transform_fn: Pure transition snapshot -> speculative state
            remote_write_fn: Remote mutation, receives the speculative state

        Returns:
            MutationResult with the speculative state and the write's result

        Raises:
            Whatever fetch_fn, transform_fn or remote_write_fn raised; after a
            failed write the pre-mutation snapshot is back in the cache
        """
        with self._aggregate_lock(data_type, aggregate_key):
            snapshot = self._store.get(aggregate_key, data_type, fetch_fn)
            speculative = transform_fn(copy.deepcopy(snapshot))
            self._store.set(aggregate_key, speculative, data_type)
            logger.debug(f"Speculative update applied to {data_type.value}:{aggregate_key}")

            try:
                remote_result = remote_write_fn(copy.deepcopy(speculative))
            except Exception as e:
                if snapshot is None:
                    self._store.invalidate(aggregate_key, data_type)
                else:
                    self._store.set(aggregate_key, snapshot, data_type)
                self._store.events.publish(
                    CacheEvent(CacheEventKind.ROLLED_BACK, aggregate_key, data_type, copy.deepcopy(snapshot))
                )
                logger.warning(
                    f"Remote write failed for {data_type.value}:{aggregate_key}, "
                    f"rolled back: {e}"
                )
                raise

            self._store.invalidate(aggregate_key, data_type)
            logger.debug(f"Mutation confirmed for {data_type.value}:{aggregate_key}")
            return MutationResult(speculative=speculative, remote_result=remote_result)
