from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from solarcrm.api.deps import get_current_user, timeline_error_response
from solarcrm.core.database import get_db
from solarcrm.core.rbac import ROLE_ADMIN, ROLE_OFFICE, ActorUser, require_roles
from solarcrm.errors import TimelineError
from solarcrm.leads.schemas import ActivityRead, LeadCreate, LeadCustomerLink, LeadInstallerAssign, LeadRead, LeadStatusUpdate
from solarcrm.leads.service import lead_service
from solarcrm.services.activity_log import list_lead_activity


router = APIRouter(prefix="/api/leads", tags=["leads"])


@router.post("", response_model=LeadRead, status_code=status.HTTP_201_CREATED)
def create_lead(
    request: Request,
    dto: LeadCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.create_lead(db, user, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.get("", response_model=list[LeadRead])
def list_leads(
    request: Request,
    lead_status: str | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[LeadRead] | JSONResponse:
    try:
        return lead_service.list_leads(db, user, status=lead_status, limit=limit, offset=offset)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.get("/{lead_id}", response_model=LeadRead)
def get_lead(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.get_lead(db, user, lead_id)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.post("/{lead_id}/status", response_model=LeadRead)
def update_lead_status(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadStatusUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.update_status(db, user, lead_id, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.post("/{lead_id}/installer", response_model=LeadRead)
def assign_installer(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadInstallerAssign,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.assign_installer(db, user, lead_id, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.post("/{lead_id}/customer", response_model=LeadRead)
def link_customer(
    request: Request,
    lead_id: uuid.UUID,
    dto: LeadCustomerLink,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LeadRead | JSONResponse:
    try:
        return lead_service.link_customer(db, user, lead_id, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.get("/{lead_id}/activity", response_model=list[ActivityRead])
def list_activity(
    request: Request,
    lead_id: uuid.UUID,
    action: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[ActivityRead] | JSONResponse:
    try:
        require_roles(user, ROLE_ADMIN, ROLE_OFFICE)
        lead = lead_service.get_visible_lead(db, user, lead_id)
        return [ActivityRead.model_validate(row) for row in list_lead_activity(db, lead.id, limit=limit, action=action)]
    except TimelineError as exc:
        return timeline_error_response(request, exc)
