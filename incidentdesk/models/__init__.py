"""Model exports for SQLAlchemy/SQLModel metadata discovery."""

from incidentdesk.models.audit_entries import AuditEntry
from incidentdesk.models.incidents import Incident
from incidentdesk.models.organizations import Organization
from incidentdesk.models.users import User

__all__ = [
    "AuditEntry",
    "Incident",
    "Organization",
    "User",
]
