from app.automation.models import AutomationOutboxEvent, AutomationRule
from app.crm.models import (
	CRMCustomFieldDefinition,
	CRMCustomFieldValue,
	CRMLead,
	CRMPipeline,
	CRMPipelineStage,
	CRMTask,
)

__all__ = [
	"AutomationOutboxEvent",
	"AutomationRule",
	"CRMCustomFieldDefinition",
	"CRMCustomFieldValue",
	"CRMLead",
	"CRMPipeline",
	"CRMPipelineStage",
	"CRMTask",
]
