"""Principal schemas: the authenticated profile and admin payloads."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (datetime, UUID)


class OrganizationSummary(SQLModel):
    id: UUID
    name: str
    org_type: str
    is_active: bool


class UserRead(SQLModel):
    """Principal as returned by admin endpoints."""

    id: UUID
    email: str | None = None
    name: str | None = None
    organization_id: UUID | None = None
    role: str
    is_active: bool
    updated_at: datetime


class MeRead(UserRead):
    """Authenticated principal with resolved capabilities and permissions."""

    organization: OrganizationSummary | None = None
    capabilities: list[str] = Field(default_factory=list)
    permissions: dict[str, bool] = Field(default_factory=dict)


class RoleChange(SQLModel):
    role: str = Field(examples=["Editor", "OrgAdmin"])


class ActiveChange(SQLModel):
    is_active: bool


class UserMutationRead(SQLModel):
    user: UserRead
    changed: bool
    audit_entry_id: UUID | None = None
