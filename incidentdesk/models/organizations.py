"""Organization (tenant) model."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from incidentdesk.core.time import utcnow
from incidentdesk.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)

ORGANIZATION_TYPES = frozenset({"core", "external"})


class Organization(QueryModel, table=True):
    """Tenant boundary with quota, access-right flags, and a permission map."""

    __tablename__ = "organizations"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    name: str
    domain: str = Field(default="")
    org_type: str = Field(default="external", index=True)
    is_active: bool = Field(default=True)
    max_users: int = Field(default=10)
    current_users: int = Field(default=0)
    access_rights: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    permissions: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
