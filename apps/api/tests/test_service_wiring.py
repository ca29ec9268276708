from __future__ import annotations

from solarcrm.documents.service import DocumentService, document_service
from solarcrm.leads.service import LeadService, lead_service
from solarcrm.timeline.catalog import StepTemplateCatalog, step_catalog
from solarcrm.timeline.engine import timeline_engine
from solarcrm.timeline.loan import LoanWorkflow, loan_workflow
from solarcrm.timeline.override import OverrideAuthority, override_authority
from solarcrm.timeline.store import lead_step_store
from solarcrm.timeline.validation import ValidationPolicy, validation_policy


def test_service_defaults_share_the_module_singletons() -> None:
    assert LeadService().store is lead_step_store
    assert LeadService().catalog is step_catalog
    assert DocumentService().leads is lead_service
    assert LoanWorkflow().catalog is step_catalog
    assert LoanWorkflow().engine is timeline_engine
    assert OverrideAuthority().engine is timeline_engine
    assert ValidationPolicy().document_store is None


def test_service_singletons_are_hashable() -> None:
    services = {step_catalog, lead_service, document_service, loan_workflow, override_authority, validation_policy}
    assert len(services) == 6
    assert StepTemplateCatalog() != step_catalog
