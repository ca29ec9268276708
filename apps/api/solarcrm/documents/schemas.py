from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field


DocumentStatus = Literal["valid", "corrupted", "replaced"]


class DocumentCreate(BaseModel):
    category: str = Field(min_length=1, max_length=64)
    path: str = Field(min_length=1)
    file_name: str | None = None


class DocumentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    lead_id: UUID
    category: str
    path: str
    file_name: str | None
    status: DocumentStatus | str
    uploaded_by: str
    uploaded_at: datetime
    status_changed_by: str | None
    status_changed_at: datetime | None
