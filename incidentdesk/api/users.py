"""Principal administration: role, activation, and permission overrides."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends

from incidentdesk.api.deps import (
    PRINCIPAL_DEP,
    SESSION_DEP,
    PrincipalContext,
    get_user_or_404,
    raise_for_result,
)
from incidentdesk.models.organizations import Organization
from incidentdesk.models.users import User
from incidentdesk.schemas.permissions import PermissionMapRead, PermissionUpdate
from incidentdesk.schemas.users import ActiveChange, RoleChange, UserMutationRead, UserRead
from incidentdesk.services.permissions import get_effective_permissions, update_user_permissions
from incidentdesk.services.principals import set_principal_active, set_principal_role

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.services.results import MutationResult

router = APIRouter(prefix="/users", tags=["users"])
TARGET_USER_DEP = Depends(get_user_or_404)


def _user_mutation_read(result: MutationResult[User]) -> UserMutationRead:
    raise_for_result(result)
    return UserMutationRead(
        user=UserRead.model_validate(result.subject, from_attributes=True),
        changed=result.changed,
        audit_entry_id=result.audit_entry.id if result.audit_entry is not None else None,
    )


@router.put("/{user_id}/role", response_model=UserMutationRead)
async def update_user_role(
    payload: RoleChange,
    target: User = TARGET_USER_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> UserMutationRead:
    result = await set_principal_role(
        session,
        principal=ctx.user,
        capabilities=ctx.capabilities,
        target=target,
        new_role=payload.role,
    )
    return _user_mutation_read(result)


@router.put("/{user_id}/active", response_model=UserMutationRead)
async def update_user_active(
    payload: ActiveChange,
    target: User = TARGET_USER_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> UserMutationRead:
    result = await set_principal_active(
        session,
        principal=ctx.user,
        capabilities=ctx.capabilities,
        target=target,
        active=payload.is_active,
    )
    return _user_mutation_read(result)


@router.put("/{user_id}/permissions", response_model=PermissionMapRead)
async def update_permissions_for_user(
    payload: PermissionUpdate,
    target: User = TARGET_USER_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> PermissionMapRead:
    """Override a user's permission flags, or reset them to the organization's."""
    organization = None
    if target.organization_id is not None:
        organization = await Organization.objects.by_id(target.organization_id).first(session)
    result = raise_for_result(
        await update_user_permissions(
            session,
            principal=ctx.user,
            capabilities=ctx.capabilities,
            target=target,
            organization=organization,
            updates=payload.permissions,
            reset=payload.reset,
            note=payload.note,
        )
    )
    return PermissionMapRead(
        target_id=target.id,
        scope="user",
        permissions=get_effective_permissions(target, organization),
        changed=result.changed,
        audit_entry_id=result.audit_entry.id if result.audit_entry is not None else None,
    )
