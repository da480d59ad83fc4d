"""Incident API schemas for create, read, and guarded mutations."""

from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class IncidentCreate(SQLModel):
    """Payload for reporting a new incident; it starts as a private draft."""

    title: str = Field(min_length=1, max_length=300, examples=["Road closure on Main St"])
    description: str = Field(default="", examples=["Reported by field staff at 09:15."])
    impact_status: Literal["low", "medium", "high", "critical"] = "low"
    organization_id: UUID | None = Field(
        default=None,
        description="Owning organization; defaults to the reporter's organization.",
    )


class StatusHistoryItem(SQLModel):
    changed_at: datetime
    changed_by: UUID
    changed_by_name: str | None = None
    previous_status: str
    new_status: str


class IncidentRead(SQLModel):
    """Incident payload returned by read and mutation endpoints."""

    id: UUID
    organization_id: UUID
    created_by: UUID
    title: str
    description: str
    editorial_notes: str | None = None
    status: str
    visibility: str
    impact_status: str
    status_history: list[StatusHistoryItem] | None = None
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    published_by: UUID | None = None
    published_at: datetime | None = None
    version: int
    created_at: datetime
    updated_at: datetime
    updated_by: UUID | None = None


class StatusChange(SQLModel):
    # Plain str so unknown statuses reach the state machine as validation failures.
    status: str = Field(examples=["Review", "Approved"])


class VisibilityChange(SQLModel):
    visibility: str = Field(examples=["public", "private"])


class ImpactChange(SQLModel):
    impact_status: str = Field(examples=["low", "critical"])


class EditorialNotesChange(SQLModel):
    editorial_notes: str | None = Field(default=None, examples=["Confirmed with city utilities."])


class MutationRead(SQLModel):
    """Outcome of a guarded mutation; ``changed`` is false for no-ops."""

    incident: IncidentRead
    changed: bool
    audit_entry_id: UUID | None = None
