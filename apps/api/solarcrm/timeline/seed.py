from __future__ import annotations

from typing import Any

from solarcrm.core.config import get_settings


OFFICE_ROLES = ["admin", "office"]
FIELD_ROLES = ["admin", "office", "agent"]
CUSTOMER_ROLES = ["admin", "office", "agent", "customer"]
INSTALLER_ROLES = ["admin", "office", "installer"]

DOCUMENT_COLLECTION_STEP = "Document Collection"
PAYMENT_STEP = "Payment/Loan Processing"


def default_step_templates() -> list[dict[str, Any]]:
    """Default solar installation timeline, in order."""
    settings = get_settings()
    return [
        {"name": "Lead Created", "allowed_roles": FIELD_ROLES},
        {
            "name": "Initial Contact",
            "allowed_roles": FIELD_ROLES,
            "remarks_required": True,
            "advances_status_to": "lead_interested",
        },
        {
            "name": "Site Survey",
            "allowed_roles": FIELD_ROLES,
            "remarks_required": True,
            "attachments_allowed": True,
        },
        {
            "name": DOCUMENT_COLLECTION_STEP,
            "allowed_roles": CUSTOMER_ROLES,
            "attachments_allowed": True,
            "customer_upload": True,
            "advances_status_to": "lead_processing",
            "required_document_categories": list(settings.mandatory_document_categories),
        },
        {"name": "PM Suryaghar Form Submission", "allowed_roles": FIELD_ROLES},
        {"name": "Proposal Generation", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {
            "name": "Proposal Approval",
            "allowed_roles": CUSTOMER_ROLES,
            "remarks_required": True,
            "attachments_allowed": True,
            "customer_upload": True,
        },
        {"name": PAYMENT_STEP, "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Installer Assignment", "allowed_roles": OFFICE_ROLES, "remarks_required": True},
        {"name": "Installation Scheduling", "allowed_roles": INSTALLER_ROLES, "remarks_required": True},
        {
            "name": "Installation in Progress",
            "allowed_roles": INSTALLER_ROLES,
            "remarks_required": True,
            "attachments_allowed": True,
        },
        {
            "name": "Installation Completed",
            "allowed_roles": INSTALLER_ROLES,
            "remarks_required": True,
            "attachments_allowed": True,
        },
        {"name": "Quality Inspection", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Commissioning", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Net Meter Application", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Net Meter Installation", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Subsidy Application", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Subsidy Approval", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Subsidy Release", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
        {"name": "Project Closure", "allowed_roles": OFFICE_ROLES, "remarks_required": True, "attachments_allowed": True},
    ]
