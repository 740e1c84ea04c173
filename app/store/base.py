"""
Remote document store interface.

The cache layer only ever sees these operations; the concrete store is a
collaborator (SQL-backed for local use, REST-backed for a hosted store).
"""
import operator
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Protocol

from app.cache.errors import CatalogCacheError, FetchError, WriteError

Document = Dict[str, Any]

# Supported comparison operators
OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


class DocumentStoreError(CatalogCacheError):
    """Base class for store-level failures that are neither reads nor writes."""

    def __init__(
        self,
        message: str = "Document store error",
        details: Optional[Dict[str, Any]] = None,
        code: str = "DOCUMENT_STORE_ERROR",
    ):
        super().__init__(code, message, details)


class QueryNotSupportedError(DocumentStoreError):
    """
    The store cannot run this query server-side (e.g. a composite index is
    missing). Callers may retry a simpler query and filter client-side.
    """

    def __init__(self, message: str = "Query requires an unavailable index", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details, code="QUERY_NOT_SUPPORTED")


class DocumentNotFoundError(WriteError):
    """An update targeted a document that does not exist."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(
            f"Document {collection}/{doc_id} not found",
            {"collection": collection, "doc_id": doc_id},
        )
        self.code = "DOCUMENT_NOT_FOUND"


@dataclass(frozen=True)
class FieldFilter:
    """A single comparison on a document field."""
    field: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in OPERATORS:
            raise ValueError(f"Unsupported operator {self.op!r}")

    def matches(self, doc: Document) -> bool:
        # Documents without the field never match, as in the SQL store
        if doc.get(self.field) is None:
            return False
        try:
            return OPERATORS[self.op](doc[self.field], self.value)
        except TypeError:
            return False


@dataclass(frozen=True)
class QuerySpec:
    """Filter, sort and paginate contract for DocumentStore.query."""
    filters: List[FieldFilter] = field(default_factory=list)
    order_by: Optional[str] = None
    descending: bool = False
    limit: Optional[int] = None
    offset: int = 0

    @property
    def fields(self) -> List[str]:
        """Distinct fields the query touches (filters, then sort field)."""
        names = list(dict.fromkeys(f.field for f in self.filters))
        if self.order_by and self.order_by not in names:
            names.append(self.order_by)
        return names

    def without_paging(self) -> "QuerySpec":
        return replace(self, limit=None, offset=0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "filters": [{"field": f.field, "op": f.op, "value": f.value} for f in self.filters],
            "orderBy": self.order_by,
            "descending": self.descending,
            "limit": self.limit,
            "offset": self.offset,
        }


def apply_query(docs: List[Document], spec: QuerySpec) -> List[Document]:
    """
    Evaluate a QuerySpec in memory.

    Documents missing the sort field sort last regardless of direction.
    """
    result = [doc for doc in docs if all(f.matches(doc) for f in spec.filters)]

    if spec.order_by:
        present = [d for d in result if d.get(spec.order_by) is not None]
        absent = [d for d in result if d.get(spec.order_by) is None]
        present.sort(key=lambda d: _sort_key(d[spec.order_by]), reverse=spec.descending)
        result = present + absent

    start = max(0, spec.offset)
    end = start + spec.limit if spec.limit is not None else None
    return result[start:end]


def _sort_key(value: Any):
    # Numbers before strings, strings case-insensitive
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    return (1, str(value).lower())


class DocumentStore(Protocol):
    """
    Interface for remote document stores.

    Implementations:
    - SqlDocumentStore: SQLAlchemy table of JSON documents
    - HttpDocumentStore: REST document API via requests

    Reads raise FetchError, writes raise WriteError, queries the store
    cannot serve raise QueryNotSupportedError.
    """

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Get one document, None if it does not exist."""
        ...

    def get_many(self, collection: str, doc_ids: List[str]) -> Dict[str, Document]:
        """Get several documents in one round trip; absent ids are omitted."""
        ...

    def query(self, collection: str, spec: QuerySpec) -> List[Document]:
        ...

    def count(self, collection: str, spec: QuerySpec) -> int:
        """Number of documents matching the query's filters (paging ignored)."""
        ...

    def add(self, collection: str, data: Document) -> str:
        """Insert a document with a generated id; returns the id."""
        ...

    def set(self, collection: str, doc_id: str, data: Document) -> None:
        ...

    def update(self, collection: str, doc_id: str, changes: Document) -> Document:
        ...

    def delete(self, collection: str, doc_id: str) -> bool:
        ...

    def delete_where(self, collection: str, filters: List[FieldFilter]) -> int:
        ...

    def ping(self) -> float:
        """Round-trip a trivial read; returns latency in milliseconds."""
        ...


__all__ = [
    "Document",
    "DocumentStore",
    "DocumentStoreError",
    "DocumentNotFoundError",
    "FetchError",
    "FieldFilter",
    "OPERATORS",
    "QueryNotSupportedError",
    "QuerySpec",
    "WriteError",
    "apply_query",
]
