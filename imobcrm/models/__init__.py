from imobcrm.models.audit import AuditLog
from imobcrm.crm.models import (
	Lead,
	LeadObservation,
	LeadStatus,
	Tenant,
	User,
	WhatsAppInstance,
)

__all__ = [
	"AuditLog",
	"Lead",
	"LeadObservation",
	"LeadStatus",
	"Tenant",
	"User",
	"WhatsAppInstance",
]
