from __future__ import annotations

import uuid
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from solarcrm.documents.models import DOCUMENT_STATUS_VALID, Document


@dataclass(frozen=True, slots=True)
class DocumentRef:
    category: str
    status: str
    path: str


class DocumentStore(Protocol):
    """Read side of the document registry consulted by completion validation."""

    def list_documents(self, session: Session, lead_id: uuid.UUID, category: str) -> list[DocumentRef]:
        ...


class DbDocumentStore:
    """Reads document metadata rows through the caller's session."""

    def list_documents(self, session: Session, lead_id: uuid.UUID, category: str) -> list[DocumentRef]:
        rows = session.scalars(
            select(Document)
            .where(Document.lead_id == lead_id, Document.category == category)
            .order_by(Document.uploaded_at.asc())
        )
        return [DocumentRef(category=row.category, status=row.status, path=row.path) for row in rows]


class InMemoryDocumentStore:
    def __init__(self) -> None:
        self._lock = Lock()
        self._documents: dict[tuple[uuid.UUID, str], list[DocumentRef]] = {}

    def add(self, lead_id: uuid.UUID, category: str, *, path: str | None = None, status: str = DOCUMENT_STATUS_VALID) -> DocumentRef:
        ref = DocumentRef(category=category, status=status, path=path or f"leads/{lead_id}/{category}")
        with self._lock:
            self._documents.setdefault((lead_id, category), []).append(ref)
        return ref

    def list_documents(self, session: Session, lead_id: uuid.UUID, category: str) -> list[DocumentRef]:
        with self._lock:
            return list(self._documents.get((lead_id, category), []))

    def clear(self) -> None:
        with self._lock:
            self._documents.clear()


_store_lock = Lock()
_document_store: DocumentStore = DbDocumentStore()


def set_document_store(store: DocumentStore) -> None:
    global _document_store
    with _store_lock:
        _document_store = store


def get_document_store() -> DocumentStore:
    with _store_lock:
        return _document_store


def reset_document_store() -> None:
    set_document_store(DbDocumentStore())
