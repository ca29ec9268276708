from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from solarcrm.core.database import Base


STEP_STATUS_UPCOMING = "upcoming"
STEP_STATUS_PENDING = "pending"
STEP_STATUS_COMPLETED = "completed"
STEP_STATUSES = (STEP_STATUS_UPCOMING, STEP_STATUS_PENDING, STEP_STATUS_COMPLETED)

DEPENDENCY_ROLE_PAYMENT = "payment"
DEPENDENCY_ROLE_LOAN = "loan"
DEPENDENCY_ROLE_INSTALLATION = "installation"
DEPENDENCY_ROLE_CLOSURE = "closure"
DEPENDENCY_ROLE_SUBSIDY = "subsidy"
DEPENDENCY_ROLE_NET_METER = "net_meter"
DEPENDENCY_ROLE_NONE = "none"
DEPENDENCY_ROLES = (
    DEPENDENCY_ROLE_PAYMENT,
    DEPENDENCY_ROLE_LOAN,
    DEPENDENCY_ROLE_INSTALLATION,
    DEPENDENCY_ROLE_CLOSURE,
    DEPENDENCY_ROLE_SUBSIDY,
    DEPENDENCY_ROLE_NET_METER,
    DEPENDENCY_ROLE_NONE,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StepTemplate(Base):
    __tablename__ = "step_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    order_index: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    allowed_roles: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    remarks_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    attachments_allowed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    attachments_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    customer_upload: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    dependency_role: Mapped[str] = mapped_column(String(32), nullable=False, default=DEPENDENCY_ROLE_NONE, server_default=DEPENDENCY_ROLE_NONE)
    advances_status_to: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
    )

    required_documents: Mapped[list[StepTemplateDocument]] = relationship(
        "StepTemplateDocument",
        back_populates="step_template",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StepTemplateDocument.category",
    )

    @property
    def is_closure(self) -> bool:
        return self.dependency_role == DEPENDENCY_ROLE_CLOSURE

    @property
    def required_document_categories(self) -> list[str]:
        return [row.category for row in self.required_documents]


class StepTemplateDocument(Base):
    __tablename__ = "step_template_documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    step_template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("step_templates.id", ondelete="CASCADE"),
        nullable=False,
    )
    category: Mapped[str] = mapped_column(String(64), nullable=False)

    step_template: Mapped[StepTemplate] = relationship("StepTemplate", back_populates="required_documents")

    __table_args__ = (UniqueConstraint("step_template_id", "category", name="uq_step_template_document_category"),)


class LeadStepInstance(Base):
    __tablename__ = "lead_steps"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lead_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("leads.id", ondelete="CASCADE"),
        nullable=False,
    )
    step_template_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("step_templates.id", ondelete="RESTRICT"),
        nullable=False,
    )
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STEP_STATUS_UPCOMING, server_default=STEP_STATUS_UPCOMING)
    completed_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    attachments: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    row_version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")

    step_template: Mapped[StepTemplate] = relationship("StepTemplate", lazy="joined")

    __table_args__ = (
        UniqueConstraint("lead_id", "step_template_id", name="uq_lead_steps_lead_template"),
        Index("ix_lead_steps_lead", "lead_id"),
    )
