"""
Data-access cache with per-type TTL, LRU eviction, request coalescing,
batch reads, optimistic mutations and a persistent local mirror.
"""
from .core import (
    MISSING,
    CacheEntry,
    CacheEvent,
    CacheEventKind,
    DataType,
    WarmResult,
    full_key,
)
from .ttl_policies import TTL_CONFIG, TypeConfig, get_type_config
from .errors import CatalogCacheError, FetchError, WriteError, PersistenceCorruption
from .coalescer import RequestCoalescer
from .events import CacheEventBus
from .persistence import (
    KeyValueStore,
    MemoryKeyValueStore,
    PersistenceBridge,
    SQLiteKeyValueStore,
)
from .batch import BatchFetcher
from .store import CacheStore
from .optimistic import MutationResult, OptimisticMutator

__all__ = [
    # Core types
    "MISSING",
    "CacheEntry",
    "CacheEvent",
    "CacheEventKind",
    "DataType",
    "WarmResult",
    "full_key",
    # TTL policies
    "TTL_CONFIG",
    "TypeConfig",
    "get_type_config",
    # Errors
    "CatalogCacheError",
    "FetchError",
    "WriteError",
    "PersistenceCorruption",
    # Coalescing
    "RequestCoalescer",
    # Events
    "CacheEventBus",
    # Persistence
    "KeyValueStore",
    "MemoryKeyValueStore",
    "PersistenceBridge",
    "SQLiteKeyValueStore",
    # Store
    "BatchFetcher",
    "CacheStore",
    # Mutations
    "MutationResult",
    "OptimisticMutator",
]
