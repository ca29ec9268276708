from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from solarcrm.api.deps import get_current_user, timeline_error_response
from solarcrm.core.database import get_db
from solarcrm.core.rbac import ROLE_ADMIN, ROLE_OFFICE, ActorUser, require_roles
from solarcrm.errors import ProjectClosedError, TimelineError
from solarcrm.leads.service import lead_service
from solarcrm.timeline.catalog import step_catalog
from solarcrm.timeline.engine import ACTION_COMPLETE, ACTION_REOPEN, ACTION_SKIP, timeline_engine
from solarcrm.timeline.loan import loan_workflow
from solarcrm.timeline.override import override_authority
from solarcrm.timeline.schemas import (
    AttachStepsRequest,
    LoanInitiateRequest,
    LoanWorkflowRead,
    OverrideMoveRequest,
    OverrideProjectRequest,
    OverrideResult,
    OverrideStepRequest,
    StepRead,
    StepTemplateCreate,
    StepTemplateDocumentsUpdate,
    StepTemplateInsert,
    StepTemplateRead,
    StepTemplateReorder,
    StepTemplateUpdate,
    TransitionRequest,
    TransitionResult,
)
from solarcrm.timeline.store import lead_step_store, to_step_read


router = APIRouter(prefix="/api/leads", tags=["timeline"])
admin_router = APIRouter(prefix="/api/leads/{lead_id}/admin", tags=["timeline.admin"])
catalog_router = APIRouter(prefix="/api/steps", tags=["timeline.catalog"])


@router.get("/{lead_id}/steps", response_model=list[StepRead])
def list_steps(
    request: Request,
    lead_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StepRead] | JSONResponse:
    try:
        lead = lead_service.get_visible_lead(db, user, lead_id)
        return [to_step_read(step) for step in lead_step_store.list_steps(db, lead.id)]
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.post("/{lead_id}/steps", response_model=list[StepRead], status_code=status.HTTP_201_CREATED)
def attach_steps(
    request: Request,
    lead_id: uuid.UUID,
    dto: AttachStepsRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StepRead] | JSONResponse:
    try:
        require_roles(user, ROLE_ADMIN, ROLE_OFFICE)
        lead = lead_service.get_visible_lead(db, user, lead_id)
        if lead.closed:
            raise ProjectClosedError("project is closed; reopen it before changing steps", details={"lead_id": str(lead_id)})
        templates = [step_catalog.get_template(db, template_id) for template_id in dto.template_ids]
        lead_step_store.attach_templates(db, lead.id, templates)
        db.commit()
        return [to_step_read(step) for step in lead_step_store.list_steps(db, lead.id)]
    except TimelineError as exc:
        db.rollback()
        return timeline_error_response(request, exc)


def _transition(
    request: Request,
    db: Session,
    user: ActorUser,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    action: str,
    dto: TransitionRequest,
) -> TransitionResult | JSONResponse:
    try:
        lead_service.get_visible_lead(db, user, lead_id)
        return timeline_engine.transition(db, lead_id, step_id, user, action, dto)
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@router.post("/{lead_id}/steps/{step_id}/complete", response_model=TransitionResult)
def complete_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    return _transition(request, db, user, lead_id, step_id, ACTION_COMPLETE, dto)


@router.post("/{lead_id}/steps/{step_id}/reopen", response_model=TransitionResult)
def reopen_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    return _transition(request, db, user, lead_id, step_id, ACTION_REOPEN, dto)


@router.post("/{lead_id}/steps/{step_id}/skip", response_model=TransitionResult)
def skip_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: TransitionRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    return _transition(request, db, user, lead_id, step_id, ACTION_SKIP, dto)


@router.post("/{lead_id}/loan", response_model=LoanWorkflowRead, status_code=status.HTTP_201_CREATED)
def initiate_loan(
    request: Request,
    lead_id: uuid.UUID,
    dto: LoanInitiateRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> LoanWorkflowRead | JSONResponse:
    try:
        lead_service.get_visible_lead(db, user, lead_id)
        return loan_workflow.initiate(db, user, lead_id, dto)
    except TimelineError as exc:
        db.rollback()
        return timeline_error_response(request, exc)


@admin_router.post("/complete/{step_id}", response_model=TransitionResult)
def admin_complete_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: OverrideStepRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    try:
        capability = override_authority.grant(user)
        payload = TransitionRequest(remarks=dto.remarks, attachments=dto.attachments, details=dto.details)
        return override_authority.complete(
            db,
            capability,
            lead_id,
            step_id,
            dto.justification,
            payload,
            expected_row_version=dto.expected_row_version,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@admin_router.post("/reopen/{step_id}", response_model=TransitionResult)
def admin_reopen_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: OverrideStepRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    try:
        capability = override_authority.grant(user)
        return override_authority.reopen(
            db,
            capability,
            lead_id,
            step_id,
            dto.justification,
            expected_row_version=dto.expected_row_version,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@admin_router.post("/skip/{step_id}", response_model=TransitionResult)
def admin_skip_step(
    request: Request,
    lead_id: uuid.UUID,
    step_id: uuid.UUID,
    dto: OverrideStepRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> TransitionResult | JSONResponse:
    try:
        capability = override_authority.grant(user)
        return override_authority.skip(
            db,
            capability,
            lead_id,
            step_id,
            dto.justification,
            expected_row_version=dto.expected_row_version,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@admin_router.post("/move-forward", response_model=OverrideResult)
def admin_move_forward(
    request: Request,
    lead_id: uuid.UUID,
    dto: OverrideMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OverrideResult | JSONResponse:
    try:
        capability = override_authority.grant(user)
        return override_authority.move_forward(
            db,
            capability,
            lead_id,
            dto.target_step_id,
            dto.justification,
            expected_row_versions=dto.expected_row_versions,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@admin_router.post("/move-backward", response_model=OverrideResult)
def admin_move_backward(
    request: Request,
    lead_id: uuid.UUID,
    dto: OverrideMoveRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OverrideResult | JSONResponse:
    try:
        capability = override_authority.grant(user)
        return override_authority.move_backward(
            db,
            capability,
            lead_id,
            dto.target_step_id,
            dto.justification,
            expected_row_versions=dto.expected_row_versions,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@admin_router.post("/close-project", response_model=OverrideResult)
def admin_close_project(
    request: Request,
    lead_id: uuid.UUID,
    dto: OverrideProjectRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OverrideResult | JSONResponse:
    try:
        capability = override_authority.grant(user)
        return override_authority.close_project(
            db,
            capability,
            lead_id,
            dto.justification,
            expected_row_version=dto.expected_row_version,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@admin_router.post("/reopen-project", response_model=OverrideResult)
def admin_reopen_project(
    request: Request,
    lead_id: uuid.UUID,
    dto: OverrideProjectRequest,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> OverrideResult | JSONResponse:
    try:
        capability = override_authority.grant(user)
        return override_authority.reopen_project(
            db,
            capability,
            lead_id,
            dto.justification,
            expected_row_version=dto.expected_row_version,
        )
    except TimelineError as exc:
        return timeline_error_response(request, exc)


@catalog_router.get("", response_model=list[StepTemplateRead])
def list_templates(
    request: Request,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StepTemplateRead] | JSONResponse:
    return step_catalog.list_templates(db)


@catalog_router.post("", response_model=StepTemplateRead, status_code=status.HTTP_201_CREATED)
def create_template(
    request: Request,
    dto: StepTemplateCreate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StepTemplateRead | JSONResponse:
    try:
        return step_catalog.create_template(db, user, dto)
    except TimelineError as exc:
        db.rollback()
        return timeline_error_response(request, exc)


@catalog_router.post("/insert", response_model=StepTemplateRead, status_code=status.HTTP_201_CREATED)
def insert_template(
    request: Request,
    dto: StepTemplateInsert,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StepTemplateRead | JSONResponse:
    try:
        return step_catalog.insert_template(db, user, dto, dto.position)
    except TimelineError as exc:
        db.rollback()
        return timeline_error_response(request, exc)


@catalog_router.put("/reorder", response_model=list[StepTemplateRead])
def reorder_templates(
    request: Request,
    dto: StepTemplateReorder,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> list[StepTemplateRead] | JSONResponse:
    try:
        return step_catalog.reorder(db, user, dto.template_ids)
    except TimelineError as exc:
        db.rollback()
        return timeline_error_response(request, exc)


@catalog_router.patch("/{template_id}", response_model=StepTemplateRead)
def update_template(
    request: Request,
    template_id: uuid.UUID,
    dto: StepTemplateUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StepTemplateRead | JSONResponse:
    try:
        return step_catalog.update_template(db, user, template_id, dto)
    except TimelineError as exc:
        db.rollback()
        return timeline_error_response(request, exc)


@catalog_router.put("/{template_id}/documents", response_model=StepTemplateRead)
def set_template_documents(
    request: Request,
    template_id: uuid.UUID,
    dto: StepTemplateDocumentsUpdate,
    db: Session = Depends(get_db),
    user: ActorUser = Depends(get_current_user),
) -> StepTemplateRead | JSONResponse:
    try:
        return step_catalog.set_required_documents(db, user, template_id, dto.categories)
    except TimelineError as exc:
        db.rollback()
        return timeline_error_response(request, exc)
