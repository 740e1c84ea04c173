"""
SQL-backed document store.

Documents live as JSON in a single SQLAlchemy table keyed by
(collection, doc_id). Filters and sorting run in SQL through JSON path
expressions, so SQLite works out of the box.
"""
import logging
import time
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Column, DateTime, Integer, String, UniqueConstraint, create_engine, func,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .base import (
    Document,
    DocumentNotFoundError,
    FetchError,
    OPERATORS,
    FieldFilter,
    QueryNotSupportedError,
    QuerySpec,
    WriteError,
)

logger = logging.getLogger("store.sql")

Base = declarative_base()


class StoredDocument(Base):
    """
    One document in one collection.
    """
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String, nullable=False, index=True)
    doc_id = Column(String, nullable=False)
    data = Column(JSON, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("collection", "doc_id", name="uix_collection_doc"),
    )

    def to_document(self) -> Document:
        return {**(self.data or {}), "id": self.doc_id}

    def __repr__(self):
        return f"<StoredDocument(collection='{self.collection}', doc_id='{self.doc_id}')>"


def _json_field(column_expr, value: Any):
    """Typed JSON path accessor matching the Python type of value."""
    if isinstance(value, bool):
        return column_expr.as_boolean()
    if isinstance(value, (int, float)):
        return column_expr.as_float()
    return column_expr.as_string()


class SqlDocumentStore:
    """
    DocumentStore on top of SQLAlchemy.

    Args:
        database_url: SQLAlchemy URL, e.g. "sqlite:///./catalog.db"
        max_index_fields: When set, queries touching more distinct fields
            (filters plus sort field) raise QueryNotSupportedError, the way
            a hosted store rejects queries lacking a composite index
        max_query_results: Upper bound on any single query's page size
    """

    def __init__(
        self,
        database_url: str = "sqlite:///./catalog.db",
        max_index_fields: Optional[int] = None,
        max_query_results: int = 1000,
        echo: bool = False,
    ):
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, connect_args=connect_args, echo=echo)
        self._session_factory = sessionmaker(autoflush=False, bind=self.engine)
        self.max_index_fields = max_index_fields
        self.max_query_results = max_query_results
        Base.metadata.create_all(bind=self.engine)

    def _session(self) -> Session:
        return self._session_factory()

    def dispose(self) -> None:
        self.engine.dispose()

    # ===== READS =====

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        try:
            with self._session() as db:
                row = self._find(db, collection, str(doc_id))
                return row.to_document() if row else None
        except SQLAlchemyError as e:
            raise FetchError(f"Failed to read {collection}/{doc_id}: {e}", {"collection": collection})

    def get_many(self, collection: str, doc_ids: List[str]) -> Dict[str, Document]:
        ids = [str(i) for i in doc_ids]
        if not ids:
            return {}
        try:
            with self._session() as db:
                rows = (
                    db.query(StoredDocument)
                    .filter(StoredDocument.collection == collection, StoredDocument.doc_id.in_(ids))
                    .all()
                )
                return {row.doc_id: row.to_document() for row in rows}
        except SQLAlchemyError as e:
            raise FetchError(f"Failed batch read from {collection}: {e}", {"collection": collection})

    def query(self, collection: str, spec: QuerySpec) -> List[Document]:
        self._check_indexes(collection, spec)
        limit = spec.limit if spec.limit is not None else self.max_query_results
        limit = min(limit, self.max_query_results)
        try:
            with self._session() as db:
                q = self._filtered(db, collection, spec.filters)
                if spec.order_by:
                    order_expr = self._order_expression(db, collection, spec.order_by)
                    direction = order_expr.desc() if spec.descending else order_expr.asc()
                    q = q.order_by(order_expr.is_(None), direction, StoredDocument.id)
                else:
                    q = q.order_by(StoredDocument.id)
                rows = q.offset(max(0, spec.offset)).limit(limit).all()
                return [row.to_document() for row in rows]
        except SQLAlchemyError as e:
            raise FetchError(f"Query on {collection} failed: {e}", {"collection": collection})

    def count(self, collection: str, spec: QuerySpec) -> int:
        self._check_indexes(collection, spec.without_paging())
        try:
            with self._session() as db:
                return self._filtered(db, collection, spec.filters).count()
        except SQLAlchemyError as e:
            raise FetchError(f"Count on {collection} failed: {e}", {"collection": collection})

    def ping(self) -> float:
        started = time.perf_counter()
        try:
            with self._session() as db:
                db.query(StoredDocument.id).limit(1).all()
        except SQLAlchemyError as e:
            raise FetchError(f"Document store unreachable: {e}")
        return (time.perf_counter() - started) * 1000

    # ===== WRITES =====

    def add(self, collection: str, data: Document) -> str:
        doc_id = uuid.uuid4().hex
        self.set(collection, doc_id, data)
        return doc_id

    def set(self, collection: str, doc_id: str, data: Document) -> None:
        payload = {k: v for k, v in data.items() if k != "id"}
        try:
            with self._session() as db:
                row = self._find(db, collection, str(doc_id))
                if row is None:
                    db.add(StoredDocument(collection=collection, doc_id=str(doc_id), data=payload))
                else:
                    row.data = payload
                db.commit()
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to write {collection}/{doc_id}: {e}", {"collection": collection})

    def update(self, collection: str, doc_id: str, changes: Document) -> Document:
        try:
            with self._session() as db:
                row = self._find(db, collection, str(doc_id))
                if row is None:
                    raise DocumentNotFoundError(collection, str(doc_id))
                # Reassign so the JSON column is flagged dirty
                row.data = {**row.data, **{k: v for k, v in changes.items() if k != "id"}}
                db.commit()
                return row.to_document()
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to update {collection}/{doc_id}: {e}", {"collection": collection})

    def delete(self, collection: str, doc_id: str) -> bool:
        try:
            with self._session() as db:
                row = self._find(db, collection, str(doc_id))
                if row is None:
                    return False
                db.delete(row)
                db.commit()
                return True
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to delete {collection}/{doc_id}: {e}", {"collection": collection})

    def delete_where(self, collection: str, filters: List[FieldFilter]) -> int:
        try:
            with self._session() as db:
                rows = self._filtered(db, collection, filters).all()
                for row in rows:
                    db.delete(row)
                db.commit()
                return len(rows)
        except SQLAlchemyError as e:
            raise WriteError(f"Failed to delete from {collection}: {e}", {"collection": collection})

    # ===== HELPERS =====

    @staticmethod
    def _find(db: Session, collection: str, doc_id: str) -> Optional[StoredDocument]:
        return (
            db.query(StoredDocument)
            .filter(StoredDocument.collection == collection, StoredDocument.doc_id == doc_id)
            .first()
        )

    @staticmethod
    def _filtered(db: Session, collection: str, filters: List[FieldFilter]):
        q = db.query(StoredDocument).filter(StoredDocument.collection == collection)
        for f in filters:
            expr = _json_field(StoredDocument.data[f.field], f.value)
            q = q.filter(OPERATORS[f.op](expr, f.value))
        return q

    def _order_expression(self, db: Session, collection: str, field: str):
        """Pick the JSON cast for the sort field from a sample value."""
        sample = None
        rows = (
            db.query(StoredDocument)
            .filter(StoredDocument.collection == collection)
            .limit(20)
            .all()
        )
        for row in rows:
            value = (row.data or {}).get(field)
            if value is not None:
                sample = value
                break
        sample = sample if sample is not None else ""
        expr = _json_field(StoredDocument.data[field], sample)
        if isinstance(sample, str):
            # Case-insensitive, as in apply_query
            return func.lower(expr)
        return expr

    def _check_indexes(self, collection: str, spec: QuerySpec) -> None:
        if self.max_index_fields is None:
            return
        fields = spec.fields
        if len(fields) > self.max_index_fields:
            raise QueryNotSupportedError(
                f"Query on {collection} over {fields} requires a composite index",
                {"collection": collection, "fields": fields},
            )

