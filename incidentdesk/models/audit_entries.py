"""Append-only audit log model for privileged mutations."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from incidentdesk.core.time import utcnow
from incidentdesk.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)

AUDIT_SCOPES = frozenset({"user", "organization", "incident"})


class AuditEntry(QueryModel, table=True):
    """Immutable record of who changed what, with before/after values."""

    __tablename__ = "audit_entries"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    scope: str = Field(index=True)
    target_id: str = Field(index=True)
    organization_id: UUID | None = Field(default=None, index=True)
    actor_id: UUID = Field(index=True)
    actor_email: str | None = Field(default=None, index=True)
    action: str = Field(index=True)
    changes: list[dict[str, object]] = Field(default_factory=list, sa_column=Column(JSON))
    keys: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    note: str | None = None
    created_at: datetime = Field(default_factory=utcnow, index=True)
