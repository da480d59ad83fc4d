"""Schemas for the audit trail query API."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class AuditEntryRead(SQLModel):
    """Audit entry returned by the query endpoint."""

    id: UUID
    scope: str
    target_id: str
    organization_id: UUID | None = None
    actor_id: UUID
    actor_email: str | None = None
    action: str
    changes: list[dict[str, object]]
    keys: list[str]
    note: str | None = None
    created_at: datetime


class AuditPageRead(SQLModel):
    """A page of audit entries, newest first."""

    items: list[AuditEntryRead]
    next_cursor: str | None = None
