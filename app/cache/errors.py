"""
Error taxonomy for the catalog data layer.

FetchError and WriteError reach callers unchanged. PersistenceCorruption never
leaves the persistence bridge. Partial batch misses are not errors at all:
missing keys are left out of the result and logged.
"""
from typing import Any, Dict, Optional


class CatalogCacheError(Exception):
    """Base exception for the catalog data layer."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {"code": self.code, "message": self.message, "details": self.details}


class FetchError(CatalogCacheError):
    """A remote read failed."""

    def __init__(self, message: str = "Remote read failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("FETCH_ERROR", message, details)


class WriteError(CatalogCacheError):
    """A remote write failed."""

    def __init__(self, message: str = "Remote write failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("WRITE_ERROR", message, details)


class PersistenceCorruption(CatalogCacheError):
    """A persisted cache blob could not be decoded or failed validation."""

    def __init__(self, message: str = "Corrupt cache blob", details: Optional[Dict[str, Any]] = None):
        super().__init__("PERSISTENCE_CORRUPTION", message, details)
