from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from solarcrm.api.deps import get_current_user, timeline_error_response
from solarcrm.core.database import get_db
from solarcrm.core.rbac import ActorUser
from solarcrm.documents.models import DOCUMENT_STATUS_CORRUPTED, DOCUMENT_STATUS_VALID
from solarcrm.documents.schemas import DocumentCreate, DocumentRead
from solarcrm.documents.service import document_service
from solarcrm.errors import TimelineError


lead_documents_router = APIRouter(prefix="/api/leads", tags=["documents"])
router = APIRouter(prefix="/api/documents", tags=["documents"])


@lead_documents_router.get("/{lead_id}/documents", response_model=list[DocumentRead])
def list_documents(
    request: Request,
    lead_id: uuid.UUID,
    category: str | None = Query(default=None),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[DocumentRead] | JSONResponse:
    try:
        return document_service.list_for_lead(db, user, lead_id, category=category)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@lead_documents_router.post("/{lead_id}/documents", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
def register_document(
    request: Request,
    lead_id: uuid.UUID,
    dto: DocumentCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        return document_service.register(db, user, lead_id, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.post("/{document_id}/valid", response_model=DocumentRead)
def mark_document_valid(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        return document_service.mark_status(db, user, document_id, DOCUMENT_STATUS_VALID)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.post("/{document_id}/corrupted", response_model=DocumentRead)
def mark_document_corrupted(
    request: Request,
    document_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> DocumentRead | JSONResponse:
    try:
        return document_service.mark_status(db, user, document_id, DOCUMENT_STATUS_CORRUPTED)
    except TimelineError as exc:
        return timeline_error_response(request, exc)
