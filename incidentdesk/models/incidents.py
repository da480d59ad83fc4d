"""Incident model and its status/visibility/impact vocabularies."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from incidentdesk.core.time import utcnow
from incidentdesk.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)

INCIDENT_STATUSES = ("Draft", "Review", "Approved", "Published", "Live", "Closed")
TERMINAL_STATUSES = frozenset({"Closed"})
PUBLISHED_STATUSES = frozenset({"Published", "Live"})
VISIBILITIES = ("public", "private")
IMPACT_LEVELS = ("low", "medium", "high", "critical")


class Incident(QueryModel, table=True):
    """Reported incident moving through the review/publish workflow."""

    __tablename__ = "incidents"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    organization_id: UUID = Field(foreign_key="organizations.id", index=True)
    created_by: UUID = Field(foreign_key="users.id", index=True)
    title: str
    description: str = Field(default="")
    editorial_notes: str | None = None
    status: str = Field(default="Draft", index=True)
    visibility: str = Field(default="private", index=True)
    impact_status: str = Field(default="low", index=True)
    status_history: list[dict[str, object]] | None = Field(
        default=None, sa_column=Column(JSON)
    )
    approved_by: UUID | None = None
    approved_at: datetime | None = None
    published_by: UUID | None = None
    published_at: datetime | None = None
    # Bumped on every write; guards the conditional UPDATE.
    version: int = Field(default=1)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    updated_by: UUID | None = None
