"""Organization permission map endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends

from incidentdesk.api.deps import (
    PRINCIPAL_DEP,
    SESSION_DEP,
    PrincipalContext,
    get_organization_or_404,
    raise_for_result,
)
from incidentdesk.models.organizations import Organization
from incidentdesk.schemas.permissions import PermissionMapRead, PermissionUpdate
from incidentdesk.services.permissions import (
    get_effective_permissions,
    update_organization_permissions,
)

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/organizations", tags=["organizations"])
ORGANIZATION_DEP = Depends(get_organization_or_404)


@router.put("/{organization_id}/permissions", response_model=PermissionMapRead)
async def update_permissions_for_organization(
    payload: PermissionUpdate,
    organization: Organization = ORGANIZATION_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> PermissionMapRead:
    """Merge flag updates into the organization's permission map."""
    result = raise_for_result(
        await update_organization_permissions(
            session,
            principal=ctx.user,
            capabilities=ctx.capabilities,
            organization=organization,
            updates=payload.permissions,
            note=payload.note,
        )
    )
    return PermissionMapRead(
        target_id=organization.id,
        scope="organization",
        permissions=get_effective_permissions(None, organization),
        changed=result.changed,
        audit_entry_id=result.audit_entry.id if result.audit_entry is not None else None,
    )
