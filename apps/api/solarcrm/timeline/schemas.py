from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Any, Literal, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from solarcrm.core.rbac import KNOWN_ROLES


StepStatus = Literal["upcoming", "pending", "completed"]
DependencyRole = Literal["payment", "loan", "installation", "closure", "subsidy", "net_meter", "none"]
LeadStatusMilestone = Literal["lead_interested", "lead_processing", "lead_completed"]
PaymentMethod = Literal["cash", "cheque", "bank_transfer", "upi", "card", "other"]


def _normalize_roles(value: list[str]) -> list[str]:
    normalized = [role.strip().lower() for role in value]
    unknown = [role for role in normalized if role not in KNOWN_ROLES]
    if unknown:
        raise ValueError(f"unknown roles: {', '.join(unknown)}")
    return list(dict.fromkeys(normalized))


class PaymentDetails(BaseModel):
    type: Literal["payment"] = "payment"
    amount: Decimal = Field(gt=Decimal("0"))
    payment_date: date
    payment_method: PaymentMethod
    transaction_reference: str | None = None


class LoanApplicationDetails(BaseModel):
    type: Literal["loan_application"] = "loan_application"
    loan_provider: str = Field(min_length=1)
    loan_amount: Decimal = Field(gt=Decimal("0"))
    interest_rate: Decimal | None = Field(default=None, ge=Decimal("0"))
    tenure_months: int | None = Field(default=None, gt=0)
    application_date: date
    application_reference: str | None = None


class LoanApprovalDetails(BaseModel):
    type: Literal["loan_approval"] = "loan_approval"
    loan_provider: str = Field(min_length=1)
    approved_amount: Decimal = Field(gt=Decimal("0"))
    approval_date: date
    sanction_reference: str | None = None


class SubsidyDetails(BaseModel):
    type: Literal["subsidy_application"] = "subsidy_application"
    application_reference: str = Field(min_length=1)
    submission_date: date
    subsidy_amount: Decimal | None = Field(default=None, gt=Decimal("0"))
    subsidy_scheme: str | None = None
    expected_release_date: date | None = None


class NetMeterDetails(BaseModel):
    type: Literal["net_meter_application"] = "net_meter_application"
    application_reference: str = Field(min_length=1)
    submission_date: date
    discom_name: str = Field(min_length=1)
    meter_capacity_kw: Decimal | None = Field(default=None, gt=Decimal("0"))


class ClosureDetails(BaseModel):
    type: Literal["project_closure"] = "project_closure"
    closure_date: date
    final_remarks: str | None = None


StepDetails = Annotated[
    Union[PaymentDetails, LoanApplicationDetails, LoanApprovalDetails, SubsidyDetails, NetMeterDetails, ClosureDetails],
    Field(discriminator="type"),
]


class StepTemplateCreate(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    allowed_roles: list[str] = Field(min_length=1)
    remarks_required: bool = False
    attachments_allowed: bool = False
    attachments_required: bool = False
    customer_upload: bool = False
    dependency_role: DependencyRole | None = None
    advances_status_to: LeadStatusMilestone | None = None
    required_document_categories: list[str] = Field(default_factory=list)

    @field_validator("allowed_roles")
    @classmethod
    def _known_roles(cls, value: list[str]) -> list[str]:
        return _normalize_roles(value)


class StepTemplateInsert(StepTemplateCreate):
    position: int = Field(ge=1)


class StepTemplateUpdate(BaseModel):
    allowed_roles: list[str] | None = None
    remarks_required: bool | None = None
    attachments_allowed: bool | None = None
    attachments_required: bool | None = None
    customer_upload: bool | None = None
    advances_status_to: LeadStatusMilestone | None = None

    @field_validator("allowed_roles")
    @classmethod
    def _known_roles(cls, value: list[str] | None) -> list[str] | None:
        if value is None:
            return None
        return _normalize_roles(value)


class StepTemplateReorder(BaseModel):
    template_ids: list[UUID] = Field(min_length=1)


class StepTemplateDocumentsUpdate(BaseModel):
    categories: list[str] = Field(default_factory=list)


class StepTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    order_index: int
    allowed_roles: list[str]
    remarks_required: bool
    attachments_allowed: bool
    attachments_required: bool
    customer_upload: bool
    dependency_role: str
    advances_status_to: str | None
    required_document_categories: list[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class StepRead(BaseModel):
    id: UUID
    lead_id: UUID
    step_template_id: UUID
    name: str
    order_index: int
    dependency_role: str
    allowed_roles: list[str]
    remarks_required: bool
    attachments_allowed: bool
    customer_upload: bool
    status: StepStatus | str
    completed_by: str | None
    completed_at: datetime | None
    remarks: str | None
    details: dict[str, Any] | None
    attachments: list[str]
    row_version: int
    updated_at: datetime


class TransitionRequest(BaseModel):
    remarks: str | None = None
    attachments: list[str] = Field(default_factory=list)
    details: StepDetails | None = None
    expected_row_version: int | None = Field(default=None, ge=1)


class TransitionResult(BaseModel):
    action: str
    outcome: Literal["applied", "duplicate"]
    step: StepRead
    lead_status: str
    lead_closed: bool


class OverrideStepRequest(BaseModel):
    justification: str = Field(min_length=1)
    remarks: str | None = None
    attachments: list[str] = Field(default_factory=list)
    details: StepDetails | None = None
    expected_row_version: int | None = Field(default=None, ge=1)


class OverrideMoveRequest(BaseModel):
    target_step_id: UUID
    justification: str = Field(min_length=1)
    expected_row_versions: dict[UUID, int] = Field(default_factory=dict)


class OverrideProjectRequest(BaseModel):
    justification: str = Field(min_length=1)
    expected_row_version: int | None = Field(default=None, ge=1)


class OverrideResult(BaseModel):
    lead_id: UUID
    action: str
    steps: list[StepRead]
    lead_status: str
    lead_closed: bool


class AttachStepsRequest(BaseModel):
    template_ids: list[UUID] = Field(min_length=1)


class LoanInitiateRequest(BaseModel):
    details: LoanApplicationDetails
    remarks: str | None = None
    attachments: list[str] = Field(default_factory=list)


class LoanWorkflowRead(BaseModel):
    lead_id: UUID
    loan_provider: str
    application_step: StepRead
    approval_step: StepRead
