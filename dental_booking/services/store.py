"""SQLAlchemy-backed document store used as the local mirror of Dentally.

Design decisions
────────────────
• **One ``documents`` table** holding every collection: a ``collection``
  name, a generated ``doc_id`` (exposed as ``_id``) and the record itself in
  a JSON column.  Rows come back in insertion order.
• **Equality filters on top-level keys**: ``{"active": True, "id": 7}`` is
  translated into JSON-path comparisons in SQL, so the same query works on
  SQLite and PostgreSQL.  Membership tests on list values (a practitioner's
  ``services``) are left to the caller.
• **Any SQLAlchemy URL**: ``sqlite:///dental_booking.db`` by default,
  ``sqlite://`` (in-memory, shared across threads) for tests.  Failures
  surface as ``sqlalchemy.exc.SQLAlchemyError``.

Usage
─────
>>> store = DocumentStore("sqlite://")
>>> store.insert_many("practitioners", [{"id": 7, "active": True, "services": [1]}])
>>> store.find("practitioners", {"active": True})
[{'id': 7, 'active': True, 'services': [1], '_id': '...'}]
"""

from __future__ import annotations

import copy
import json
import logging
import uuid
from collections.abc import Iterable
from typing import Any

from sqlalchemy import JSON, Column, Integer, String, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

Base = declarative_base()


class Document(Base):
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String(64), index=True, nullable=False)
    doc_id = Column(String(64), unique=True, index=True, nullable=False)
    body = Column(JSON, nullable=False)


def _condition(key: str, expected: Any):
    if key == "_id":
        return Document.doc_id == str(expected)
    field = Document.body[key]
    if isinstance(expected, bool):
        return field.as_boolean() == expected
    if isinstance(expected, int):
        return field.as_integer() == expected
    if isinstance(expected, float):
        return field.as_float() == expected
    if isinstance(expected, str):
        return field.as_string() == expected
    raise TypeError(f"Unsupported filter value for {key!r}: {expected!r}")


def _to_dict(row: Document) -> dict[str, Any]:
    return {**copy.deepcopy(row.body), "_id": row.doc_id}


def _create_engine(url: str):
    options: dict[str, Any] = {
        "json_serializer": lambda obj: json.dumps(obj, default=str),
    }
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
        if url in ("sqlite://", "sqlite:///:memory:"):
            options["poolclass"] = StaticPool
    else:
        options["pool_pre_ping"] = True
    return create_engine(url, **options)


class DocumentStore:
    """Named collections of JSON documents in a relational database."""

    def __init__(self, url: str = "sqlite://") -> None:
        self.url = url
        self._engine = _create_engine(url)
        Base.metadata.create_all(self._engine)
        self._sessions = sessionmaker(bind=self._engine, autoflush=False, expire_on_commit=False)
        logger.info("Store: using %s", self._engine.url.render_as_string(hide_password=True))

    @property
    def is_ephemeral(self) -> bool:
        return self.url in ("sqlite://", "sqlite:///:memory:")

    def _query(self, session: Session, collection: str, query: dict[str, Any] | None):
        q = session.query(Document).filter(Document.collection == collection)
        for key, expected in (query or {}).items():
            q = q.filter(_condition(key, expected))
        return q.order_by(Document.id)

    # ── Writes ───────────────────────────────────────────────────────

    def create(self, collection: str, document: dict[str, Any]) -> dict[str, Any]:
        """Insert a single document and return the stored copy (with ``_id``)."""
        return self.insert_many(collection, [document])[0]

    def insert_many(
        self, collection: str, documents: Iterable[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        with self._sessions() as session, session.begin():
            rows = []
            for document in documents:
                body = {k: v for k, v in copy.deepcopy(document).items() if k != "_id"}
                rows.append(Document(
                    collection=collection,
                    doc_id=str(document.get("_id") or uuid.uuid4().hex),
                    body=body,
                ))
            session.add_all(rows)
        return [_to_dict(row) for row in rows]

    def update_many(
        self, collection: str, query: dict[str, Any] | None, changes: dict[str, Any],
    ) -> int:
        """Shallow-merge *changes* into every matching document.  Returns count."""
        with self._sessions() as session, session.begin():
            rows = self._query(session, collection, query).all()
            for row in rows:
                # JSON columns only notice reassignment
                row.body = {**row.body, **copy.deepcopy(changes)}
        return len(rows)

    def delete_many(self, collection: str, query: dict[str, Any] | None = None) -> int:
        with self._sessions() as session, session.begin():
            rows = self._query(session, collection, query).all()
            for row in rows:
                session.delete(row)
        return len(rows)

    def replace_all(
        self, collection: str, documents: Iterable[dict[str, Any]],
    ) -> list[dict[str, Any]]:
        """``delete_many`` followed by ``insert_many`` for sync jobs."""
        self.delete_many(collection)
        return self.insert_many(collection, documents)

    # ── Reads ────────────────────────────────────────────────────────

    def find(
        self,
        collection: str,
        query: dict[str, Any] | None = None,
        *,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._sessions() as session:
            q = self._query(session, collection, query)
            if limit is not None:
                q = q.limit(limit)
            return [_to_dict(row) for row in q.all()]

    def find_one(
        self, collection: str, query: dict[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        found = self.find(collection, query, limit=1)
        return found[0] if found else None

    def count(self, collection: str, query: dict[str, Any] | None = None) -> int:
        with self._sessions() as session:
            return self._query(session, collection, query).count()

    def close(self) -> None:
        self._engine.dispose()
