from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


ManualLeadStatus = Literal["lead_interested", "lead_cancelled"]


class LeadCreate(BaseModel):
    customer_name: str = Field(min_length=1, max_length=200)
    phone: str = Field(min_length=6, max_length=32)
    email: str | None = Field(default=None, max_length=320)
    address: str | None = None
    city: str | None = None
    state: str | None = None
    pincode: str | None = Field(default=None, max_length=16)
    notes: str | None = None
    customer_account_id: str | None = None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    customer_name: str
    phone: str
    email: str | None
    address: str | None
    city: str | None
    state: str | None
    pincode: str | None
    notes: str | None
    status: str
    closed: bool
    installer_id: str | None
    customer_account_id: str | None
    created_by: str
    created_at: datetime
    updated_at: datetime
    row_version: int


class LeadStatusUpdate(BaseModel):
    status: ManualLeadStatus
    reason: str | None = None
    expected_row_version: int | None = Field(default=None, ge=1)


class LeadInstallerAssign(BaseModel):
    installer_id: str = Field(min_length=1)
    expected_row_version: int | None = Field(default=None, ge=1)


class LeadCustomerLink(BaseModel):
    customer_account_id: str = Field(min_length=1)
    expected_row_version: int | None = Field(default=None, ge=1)


class ActivityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID | None
    user_id: str
    action: str
    entity_type: str
    entity_id: str | None
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    correlation_id: str | None
    timestamp: datetime
