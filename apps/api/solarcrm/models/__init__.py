from solarcrm.documents.models import Document
from solarcrm.leads.models import Lead
from solarcrm.models.activity_log import ActivityLogEntry
from solarcrm.timeline.models import LeadStepInstance, StepTemplate, StepTemplateDocument

__all__ = [
    "ActivityLogEntry",
    "Document",
    "Lead",
    "LeadStepInstance",
    "StepTemplate",
    "StepTemplateDocument",
]
