"""
REST document store client.

Talks to a hosted document API:

    GET    {base}/collections/{c}/documents/{id}
    POST   {base}/collections/{c}/documents:batchGet   {"ids": [...]}
    POST   {base}/collections/{c}/documents:query      QuerySpec.to_dict()
    POST   {base}/collections/{c}/documents:count      QuerySpec.to_dict()
    POST   {base}/collections/{c}/documents            document -> {"id": ...}
    PUT    {base}/collections/{c}/documents/{id}
    PATCH  {base}/collections/{c}/documents/{id}
    DELETE {base}/collections/{c}/documents/{id}
    POST   {base}/collections/{c}/documents:deleteWhere {"filters": [...]}
    GET    {base}/health

A 400 response with code FAILED_PRECONDITION means the query needs an index
the store does not have.
"""
import logging
import threading
import time
from typing import Any, Dict, List, Optional

import requests

from .base import (
    Document,
    DocumentNotFoundError,
    FetchError,
    FieldFilter,
    QueryNotSupportedError,
    QuerySpec,
    WriteError,
)

logger = logging.getLogger("store.http")

# Limit concurrent requests against the document API
_MAX_CONCURRENT_REQUESTS = 10


class HttpDocumentStore:
    """DocumentStore over HTTP using requests."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()
        self._semaphore = threading.Semaphore(_MAX_CONCURRENT_REQUESTS)
        if api_key:
            self._session.headers["Authorization"] = f"Bearer {api_key}"
        self._session.headers.setdefault("Content-Type", "application/json")

    def _url(self, collection: str, suffix: str = "") -> str:
        return f"{self.base_url}/collections/{collection}/documents{suffix}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        with self._semaphore:
            return self._session.request(method, url, timeout=self.timeout, **kwargs)

    def _read(self, method: str, url: str, **kwargs) -> Any:
        """Perform a read; map transport and HTTP failures to FetchError."""
        try:
            response = self._request(method, url, **kwargs)
        except requests.RequestException as e:
            raise FetchError(f"Request to {url} failed: {e}", {"url": url})

        if response.status_code == 404:
            return None
        if response.status_code == 400 and _error_code(response) == "FAILED_PRECONDITION":
            raise QueryNotSupportedError(_error_message(response), {"url": url})
        if not response.ok:
            raise FetchError(
                f"{method} {url} returned {response.status_code}",
                {"url": url, "status": response.status_code},
            )
        return response.json()

    def _write(self, method: str, url: str, **kwargs) -> Optional[requests.Response]:
        """Perform a write; map transport and HTTP failures to WriteError."""
        try:
            response = self._request(method, url, **kwargs)
        except requests.RequestException as e:
            raise WriteError(f"Request to {url} failed: {e}", {"url": url})

        if response.status_code == 404:
            return None
        if not response.ok:
            raise WriteError(
                f"{method} {url} returned {response.status_code}",
                {"url": url, "status": response.status_code},
            )
        return response

    # ===== READS =====

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        return self._read("GET", self._url(collection, f"/{doc_id}"))

    def get_many(self, collection: str, doc_ids: List[str]) -> Dict[str, Document]:
        ids = [str(i) for i in doc_ids]
        if not ids:
            return {}
        payload = self._read("POST", self._url(collection, ":batchGet"), json={"ids": ids}) or {}
        documents = payload.get("documents", [])
        return {str(doc["id"]): doc for doc in documents if doc and "id" in doc}

    def query(self, collection: str, spec: QuerySpec) -> List[Document]:
        payload = self._read("POST", self._url(collection, ":query"), json=spec.to_dict()) or {}
        return payload.get("documents", [])

    def count(self, collection: str, spec: QuerySpec) -> int:
        payload = self._read(
            "POST", self._url(collection, ":count"), json=spec.without_paging().to_dict()
        ) or {}
        return int(payload.get("count", 0))

    def ping(self) -> float:
        started = time.perf_counter()
        self._read("GET", f"{self.base_url}/health")
        return (time.perf_counter() - started) * 1000

    # ===== WRITES =====

    def add(self, collection: str, data: Document) -> str:
        response = self._write("POST", self._url(collection), json=data)
        if response is None:
            raise WriteError(f"Collection {collection} not found", {"collection": collection})
        return str(response.json()["id"])

    def set(self, collection: str, doc_id: str, data: Document) -> None:
        response = self._write("PUT", self._url(collection, f"/{doc_id}"), json=data)
        if response is None:
            raise WriteError(
                f"Write to {collection}/{doc_id} rejected: not found",
                {"collection": collection, "doc_id": str(doc_id)},
            )

    def update(self, collection: str, doc_id: str, changes: Document) -> Document:
        response = self._write("PATCH", self._url(collection, f"/{doc_id}"), json=changes)
        if response is None:
            raise DocumentNotFoundError(collection, str(doc_id))
        return response.json()

    def delete(self, collection: str, doc_id: str) -> bool:
        return self._write("DELETE", self._url(collection, f"/{doc_id}")) is not None

    def delete_where(self, collection: str, filters: List[FieldFilter]) -> int:
        body = {"filters": [{"field": f.field, "op": f.op, "value": f.value} for f in filters]}
        response = self._write("POST", self._url(collection, ":deleteWhere"), json=body)
        if response is None:
            raise WriteError(f"Collection {collection} not found", {"collection": collection})
        return int(response.json().get("deleted", 0))

    def close(self) -> None:
        self._session.close()


def _error_code(response: requests.Response) -> Optional[str]:
    try:
        return (response.json().get("error") or {}).get("code")
    except ValueError:
        return None


def _error_message(response: requests.Response) -> str:
    try:
        return (response.json().get("error") or {}).get("message") or response.text
    except ValueError:
        return response.text
