from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from solarcrm.core.database import Base


LEAD_STATUS_LEAD = "lead"
LEAD_STATUS_INTERESTED = "lead_interested"
LEAD_STATUS_PROCESSING = "lead_processing"
LEAD_STATUS_COMPLETED = "lead_completed"
LEAD_STATUS_CANCELLED = "lead_cancelled"

# progression order; cancelled sits outside it
LEAD_STATUS_PROGRESSION = (
    LEAD_STATUS_LEAD,
    LEAD_STATUS_INTERESTED,
    LEAD_STATUS_PROCESSING,
    LEAD_STATUS_COMPLETED,
)
LEAD_STATUSES = LEAD_STATUS_PROGRESSION + (LEAD_STATUS_CANCELLED,)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_name: Mapped[str] = mapped_column(Text, nullable=False)
    phone: Mapped[str] = mapped_column(String(32), nullable=False)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(128), nullable=True)
    state: Mapped[str | None] = mapped_column(String(128), nullable=True)
    pincode: Mapped[str | None] = mapped_column(String(16), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=LEAD_STATUS_LEAD, server_default=LEAD_STATUS_LEAD)
    manual_status: Mapped[str | None] = mapped_column(String(32), nullable=True)
    closed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    installer_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    customer_account_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    created_by: Mapped[str] = mapped_column(String(128), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    __table_args__ = (
        Index("ix_leads_status", "status"),
        Index("ix_leads_created_by", "created_by"),
        Index("ix_leads_installer_id", "installer_id"),
        Index("ix_leads_customer_account_id", "customer_account_id"),
    )
