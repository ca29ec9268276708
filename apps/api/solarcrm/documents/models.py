from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from solarcrm.core.database import Base


DOCUMENT_STATUS_VALID = "valid"
DOCUMENT_STATUS_CORRUPTED = "corrupted"
DOCUMENT_STATUS_REPLACED = "replaced"
DOCUMENT_STATUSES = (DOCUMENT_STATUS_VALID, DOCUMENT_STATUS_CORRUPTED, DOCUMENT_STATUS_REPLACED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Document(Base):
    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    category: Mapped[str] = mapped_column(String(64), nullable=False)
    path: Mapped[str] = mapped_column(Text, nullable=False)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=DOCUMENT_STATUS_VALID,
        server_default=DOCUMENT_STATUS_VALID,
    )
    uploaded_by: Mapped[str] = mapped_column(String(128), nullable=False)
    uploaded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    status_changed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    status_changed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_documents_lead_category", "lead_id", "category"),)
