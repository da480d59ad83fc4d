"""Permission map update and log payloads."""

from __future__ import annotations

from typing import Literal
from uuid import UUID

from pydantic import Field
from sqlmodel import SQLModel

RUNTIME_ANNOTATION_TYPES = (UUID,)


class PermissionUpdate(SQLModel):
    """Flag updates merged into an organization or user permission map."""

    permissions: dict[str, bool] = Field(
        default_factory=dict,
        examples=[{"createIncidents": True, "viewAIReports": False}],
    )
    reset: bool = Field(
        default=False,
        description="User maps only: drop the override and inherit from the organization.",
    )
    note: str | None = None


class PermissionChangeItem(SQLModel):
    key: str
    from_: object | None = Field(default=None, alias="from")
    to: object | None = None


class PermissionLogCreate(SQLModel):
    """Client-reported permission change recorded in the audit trail."""

    organization_id: UUID
    user_id: UUID | None = None
    scope: Literal["organization", "user"]
    action: str = Field(min_length=1, examples=["update", "reset"])
    changes: list[PermissionChangeItem] = Field(min_length=1)
    note: str | None = None


class PermissionMapRead(SQLModel):
    """Stored map of the target and the resulting effective flags."""

    target_id: UUID
    scope: Literal["organization", "user"]
    permissions: dict[str, bool]
    changed: bool
    audit_entry_id: UUID | None = None
