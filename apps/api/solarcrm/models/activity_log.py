from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, String, Uuid, event
from sqlalchemy.orm import Mapped, mapped_column

from solarcrm.core.database import Base
from solarcrm.errors import InvariantViolation


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActivityLogEntry(Base):
    __tablename__ = "activity_log"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID | None] = mapped_column(Uuid(as_uuid=True), nullable=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    old_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    correlation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_activity_log_lead_timestamp", "lead_id", "timestamp"),
        Index("ix_activity_log_entity", "entity_type", "entity_id"),
    )


@event.listens_for(ActivityLogEntry, "before_update")
def _reject_update(mapper, connection, target: ActivityLogEntry) -> None:  # type: ignore[no-untyped-def]
    raise InvariantViolation("activity log entries are append-only", details={"entry_id": str(target.id)})


@event.listens_for(ActivityLogEntry, "before_delete")
def _reject_delete(mapper, connection, target: ActivityLogEntry) -> None:  # type: ignore[no-untyped-def]
    raise InvariantViolation("activity log entries are append-only", details={"entry_id": str(target.id)})
