"""
Batch resolution: many keys, at most one bulk remote read.

This is what removes N+1 fan-out when, for example, a cart's lines are
resolved into their product records.
"""
import logging
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping

from .core import MISSING, DataType

if TYPE_CHECKING:
    from .store import CacheStore

logger = logging.getLogger("cache.batch")

BatchFetchFn = Callable[[List[str]], Mapping[str, Any]]


class BatchFetcher:
    """
    Splits keys into cached and uncached, fetches the uncached ones in one
    call and caches every returned item individually.
    """

    def __init__(self, store: "CacheStore"):
        self._store = store

    def resolve(
        self,
        keys: Iterable[str],
        data_type: DataType,
        batch_fetch_fn: BatchFetchFn,
    ) -> Dict[str, Any]:
        """
        Resolve keys to values.

        Args:
            keys: Keys to resolve (duplicates are ignored)
            data_type: Data type of every key
            batch_fetch_fn: Bulk read taking the uncached keys, returning
                a mapping of the ones it found

        Returns:
            key -> value for every key that was cached or returned by the
            bulk read; missing keys are omitted

        Raises:
            Whatever batch_fetch_fn raised (nothing is cached in that case)
        """
        unique_keys = list(dict.fromkeys(str(k) for k in keys))
        results: Dict[str, Any] = {}
        uncached: List[str] = []

        for key in unique_keys:
            cached = self._store.peek(key, data_type)
            if cached is MISSING:
                uncached.append(key)
            else:
                results[key] = cached

        if not uncached:
            return {key: results[key] for key in unique_keys}

        logger.info(f"Batch fetching {len(uncached)} items for {data_type.value}")
        fetched = batch_fetch_fn(list(uncached)) or {}

        missing = []
        for key in uncached:
            value = fetched.get(key)
            if value is None:
                missing.append(key)
                continue
            self._store.set(key, value, data_type, persist=True)
            results[key] = value

        if missing:
            logger.warning(
                f"Batch fetch for {data_type.value} missing {len(missing)} of "
                f"{len(uncached)} keys: {missing}"
            )

        self._store.record_saved_reads(len(uncached) - 1)
        return {key: results[key] for key in unique_keys if key in results}
