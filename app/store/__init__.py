"""
Remote document store adapters.
"""
from .base import (
    Document,
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    FieldFilter,
    QueryNotSupportedError,
    QuerySpec,
    apply_query,
)
from .sql import SqlDocumentStore
from .http import HttpDocumentStore

__all__ = [
    "Document",
    "DocumentNotFoundError",
    "DocumentStore",
    "DocumentStoreError",
    "FieldFilter",
    "QueryNotSupportedError",
    "QuerySpec",
    "apply_query",
    "SqlDocumentStore",
    "HttpDocumentStore",
]
