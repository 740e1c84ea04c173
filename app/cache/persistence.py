"""
Local persistence for cache entries across process restarts.

Each entry is mirrored as a JSON blob under "cache:<full key>":

    {"data": ..., "storedAt": <epoch seconds>, "dataType": "products",
     "schemaVersion": "1.0"}

Blobs that fail to decode, carry another schema version, fail their data
type's schema or have outlived their TTL are deleted on load. Nothing here
ever raises into the cache.
"""
import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Protocol, Tuple

from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from .core import CacheEntry, DataType, estimate_size
from .errors import PersistenceCorruption
from .ttl_policies import TypeConfig, get_type_config

logger = logging.getLogger("cache.persistence")

NAMESPACE = "cache:"
SCHEMA_VERSION = "1.0"

SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    blob TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
"""


class KeyValueStore(Protocol):
    """
    Durable local key/value surface used by the bridge.

    Implementations:
    - SQLiteKeyValueStore: sqlite file on disk (default)
    - MemoryKeyValueStore: process-local dictionary
    """

    def put(self, key: str, blob: str) -> None:
        ...

    def get_all(self) -> List[Tuple[str, str]]:
        ...

    def keys(self) -> List[str]:
        """Stored keys without their blobs."""
        ...

    def delete(self, key: str) -> None:
        ...


class SQLiteKeyValueStore:
    """sqlite-backed KeyValueStore, one connection per operation."""

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get a database connection."""
        conn = sqlite3.connect(str(self.db_path))
        try:
            yield conn
        finally:
            conn.close()

    def put(self, key: str, blob: str) -> None:
        now = datetime.utcnow().isoformat() + "Z"
        with self._get_connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO cache_entries (key, blob, updated_at) VALUES (?, ?, ?)",
                (key, blob, now),
            )
            conn.commit()

    def get_all(self) -> List[Tuple[str, str]]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key, blob FROM cache_entries ORDER BY updated_at")
            return [(row[0], row[1]) for row in cursor.fetchall()]

    def keys(self) -> List[str]:
        with self._get_connection() as conn:
            cursor = conn.execute("SELECT key FROM cache_entries")
            return [row[0] for row in cursor.fetchall()]

    def delete(self, key: str) -> None:
        with self._get_connection() as conn:
            conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            conn.commit()


class MemoryKeyValueStore:
    """Dictionary-backed KeyValueStore; survives as long as the object does."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})
        self._lock = threading.Lock()

    def put(self, key: str, blob: str) -> None:
        with self._lock:
            self._data[key] = blob

    def get_all(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._data.items())

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._data)

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._data)


class PersistenceBridge:
    """
    Mirrors cache entries into a KeyValueStore and seeds the cache on startup.

    Args:
        kv_store: Durable storage primitive
        schemas: Per data type TypeAdapter used to rehydrate payloads; data
            types without one come back as plain JSON values
    """

    def __init__(
        self,
        kv_store: KeyValueStore,
        schemas: Optional[Dict[DataType, TypeAdapter]] = None,
    ):
        self._kv = kv_store
        self._schemas = dict(schemas or {})

    @staticmethod
    def storage_key(full_key: str) -> str:
        return f"{NAMESPACE}{full_key}"

    def save(self, full_key: str, data: Any, data_type: DataType, stored_at: float) -> bool:
        """
        Serialize and store one entry. Failures are logged, never raised.

        Returns:
            True if the blob was written
        """
        try:
            blob = json.dumps({
                "data": to_jsonable_python(data),
                "storedAt": stored_at,
                "dataType": data_type.value,
                "schemaVersion": SCHEMA_VERSION,
            })
            self._kv.put(self.storage_key(full_key), blob)
            return True
        except Exception as e:
            logger.warning(f"Failed to persist {full_key}: {e}")
            return False

    def load_all(
        self,
        now: float,
        type_configs: Optional[Dict[DataType, TypeConfig]] = None,
    ) -> List[CacheEntry]:
        """
        Decode every namespaced blob, dropping corrupt and expired ones.

        Args:
            now: Current epoch seconds
            type_configs: TTL table used for the expiry check

        Returns:
            Entries still within their TTL, oldest first
        """
        try:
            rows = self._kv.get_all()
        except Exception as e:
            logger.warning(f"Failed to read persistent cache: {e}")
            return []

        entries: List[CacheEntry] = []
        dropped = 0
        for storage_key, blob in rows:
            if not storage_key.startswith(NAMESPACE):
                continue
            try:
                entry = self._decode(storage_key, blob, now)
            except PersistenceCorruption as e:
                logger.warning(f"Dropping persisted entry {storage_key}: {e.message}")
                self._discard(storage_key)
                dropped += 1
                continue

            config = get_type_config(entry.data_type, type_configs)
            if entry.is_expired(config.ttl_seconds, now):
                self._discard(storage_key)
                dropped += 1
                continue
            entries.append(entry)

        if entries or dropped:
            logger.info(
                f"Loaded {len(entries)} items from persistent storage "
                f"({dropped} expired or corrupt dropped)"
            )
        return entries

    def _decode(self, storage_key: str, blob: str, now: float) -> CacheEntry:
        """Turn one blob back into a CacheEntry or raise PersistenceCorruption."""
        try:
            payload = json.loads(blob)
        except (TypeError, ValueError) as e:
            raise PersistenceCorruption(f"Unreadable blob: {e}")

        if not isinstance(payload, dict):
            raise PersistenceCorruption("Blob is not an object")

        version = payload.get("schemaVersion")
        if version != SCHEMA_VERSION:
            raise PersistenceCorruption(
                f"Schema version {version!r} != {SCHEMA_VERSION!r}",
                {"schemaVersion": version},
            )

        try:
            data_type = DataType(payload.get("dataType"))
        except ValueError:
            raise PersistenceCorruption(f"Unknown data type {payload.get('dataType')!r}")

        stored_at = payload.get("storedAt")
        if not isinstance(stored_at, (int, float)) or isinstance(stored_at, bool):
            raise PersistenceCorruption("Missing storedAt timestamp")

        full_key = storage_key[len(NAMESPACE):]
        prefix = f"{data_type.value}:"
        if not full_key.startswith(prefix):
            raise PersistenceCorruption(f"Key does not belong to {data_type.value}")

        data = payload.get("data")
        adapter = self._schemas.get(data_type)
        if adapter is not None:
            try:
                data = adapter.validate_python(data)
            except ValidationError as e:
                raise PersistenceCorruption(f"Schema validation failed: {e.error_count()} errors")

        return CacheEntry(
            key=full_key[len(prefix):],
            data_type=data_type,
            data=data,
            stored_at=float(stored_at),
            last_accessed_at=now,
            size_estimate=estimate_size(data),
        )

    def _discard(self, storage_key: str) -> None:
        try:
            self._kv.delete(storage_key)
        except Exception as e:
            logger.warning(f"Failed to delete persisted entry {storage_key}: {e}")

    def purge(self, pattern: str, data_type: Optional[DataType] = None) -> int:
        """
        Delete persisted blobs whose full key contains pattern.

        Returns:
            Number of blobs deleted
        """
        try:
            storage_keys = self._kv.keys()
        except Exception as e:
            logger.warning(f"Failed to list persistent cache for purge: {e}")
            return 0

        count = 0
        for storage_key in storage_keys:
            if not storage_key.startswith(NAMESPACE):
                continue
            full_key = storage_key[len(NAMESPACE):]
            if data_type is not None and not full_key.startswith(f"{data_type.value}:"):
                continue
            if pattern in full_key:
                self._discard(storage_key)
                count += 1
        return count

    def clear(self) -> int:
        """Delete every namespaced blob."""
        return self.purge("")
