"""Principal (user account) model with role and organization membership."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import JSON, Column
from sqlmodel import Field

from incidentdesk.core.time import utcnow
from incidentdesk.models.base import QueryModel

RUNTIME_ANNOTATION_TYPES = (datetime,)


class User(QueryModel, table=True):
    """Authenticated actor. Deactivated rather than deleted."""

    __tablename__ = "users"  # pyright: ignore[reportAssignmentType]

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    clerk_user_id: str = Field(index=True, unique=True)
    email: str | None = Field(default=None, index=True)
    name: str | None = None
    organization_id: UUID | None = Field(
        default=None,
        foreign_key="organizations.id",
        index=True,
    )
    role: str = Field(default="User", index=True)
    is_active: bool = Field(default=True)
    # User-level permission override map; `inheritedFromOrg: false` activates it.
    permissions: dict[str, object] | None = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
