from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from solarcrm.context import get_correlation_id
from solarcrm.models.activity_log import ActivityLogEntry


def write_activity(
    db: Session,
    *,
    user_id: str,
    action: str,
    entity_type: str,
    entity_id: str | None,
    lead_id: uuid.UUID | None = None,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
    correlation_id: str | None = None,
) -> ActivityLogEntry:
    """Stage an activity entry in the caller's unit of work; the caller commits."""
    entry = ActivityLogEntry(
        lead_id=lead_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        old_value=old_value,
        new_value=new_value,
        correlation_id=correlation_id or get_correlation_id(),
    )
    db.add(entry)
    return entry


def list_lead_activity(db: Session, lead_id: uuid.UUID, *, limit: int = 200, action: str | None = None) -> list[ActivityLogEntry]:
    stmt = select(ActivityLogEntry).where(ActivityLogEntry.lead_id == lead_id)
    if action is not None:
        stmt = stmt.where(ActivityLogEntry.action == action)
    stmt = stmt.order_by(ActivityLogEntry.timestamp.desc(), ActivityLogEntry.id.desc()).limit(limit)
    return list(db.scalars(stmt))
