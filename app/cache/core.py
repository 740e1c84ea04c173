"""
Core cache data structures.
"""
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic_core import to_jsonable_python

T = TypeVar("T")

DEFAULT_SIZE_ESTIMATE = 1000


class _Missing:
    """Sentinel for "no usable cache entry" (None is a legal payload elsewhere)."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


class DataType(Enum):
    """Kinds of cached data, each with its own TTL and capacity."""
    PRODUCTS = "products"                 # single product records
    PRODUCT_LISTS = "product_lists"       # list pages, featured, related
    FACETS = "facets"                     # category / brand counts
    SEARCHES = "searches"                 # free-text search results
    CARTS = "carts"                       # assembled carts, one per user
    USERS = "users"
    ORDERS = "orders"
    RECOMMENDATIONS = "recommendations"


class CacheEventKind(Enum):
    """What happened to a cache entry."""
    SET = "set"
    INVALIDATED = "invalidated"
    EVICTED = "evicted"
    EXPIRED = "expired"
    ROLLED_BACK = "rolled_back"


def full_key(key: str, data_type: DataType) -> str:
    """Registry / map key: "<data_type>:<key>"."""
    return f"{data_type.value}:{key}"


def estimate_size(data: Any) -> int:
    """Approximate payload size as the length of its JSON encoding."""
    try:
        return len(json.dumps(to_jsonable_python(data)))
    except (TypeError, ValueError):
        return DEFAULT_SIZE_ESTIMATE


@dataclass
class CacheEntry(Generic[T]):
    """
    A cached payload plus the bookkeeping needed for TTL and LRU.

    Only last_accessed_at changes after creation.
    """
    key: str
    data_type: DataType
    data: T
    stored_at: float
    last_accessed_at: float
    size_estimate: int = DEFAULT_SIZE_ESTIMATE
    sequence: int = 0  # insertion order, LRU tie-break

    @property
    def full_key(self) -> str:
        return full_key(self.key, self.data_type)

    def age_seconds(self, now: float) -> float:
        """Seconds since data was stored."""
        return now - self.stored_at

    def is_expired(self, ttl_seconds: float, now: float) -> bool:
        return self.age_seconds(now) > ttl_seconds


@dataclass(frozen=True)
class CacheEvent:
    """Change notification delivered to cache subscribers."""
    kind: CacheEventKind
    key: str
    data_type: DataType
    data: Optional[Any] = None

    @property
    def full_key(self) -> str:
        return full_key(self.key, self.data_type)


@dataclass(frozen=True)
class WarmResult:
    """Outcome of warming a single key."""
    key: str
    success: bool
    from_cache: bool = False
    error: Optional[str] = None
