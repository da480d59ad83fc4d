"""Authentication bootstrap endpoint."""

from __future__ import annotations

from fastapi import APIRouter

from incidentdesk.api.deps import PRINCIPAL_DEP, PrincipalContext
from incidentdesk.schemas.users import MeRead, OrganizationSummary
from incidentdesk.services.permissions import get_effective_permissions

router = APIRouter(prefix="/auth", tags=["auth"])


@router.get("/me", response_model=MeRead)
async def read_me(ctx: PrincipalContext = PRINCIPAL_DEP) -> MeRead:
    """Return the caller, its organization, capabilities, and effective permissions."""
    organization = (
        OrganizationSummary.model_validate(ctx.organization, from_attributes=True)
        if ctx.organization is not None
        else None
    )
    return MeRead.model_validate(
        {
            **ctx.user.model_dump(),
            "organization": organization,
            "capabilities": ctx.capabilities.as_list(),
            "permissions": get_effective_permissions(ctx.user, ctx.organization),
        }
    )
