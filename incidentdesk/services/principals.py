"""Role assignment and activation of principals."""

from __future__ import annotations

from typing import TYPE_CHECKING

from incidentdesk.core.logging import get_logger
from incidentdesk.core.time import utcnow
from incidentdesk.services.audit import patch_audited
from incidentdesk.services.capabilities import Role, parse_role
from incidentdesk.services.results import ErrorKind, MutationResult, PersistenceUnavailableError

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.models.users import User
    from incidentdesk.services.capabilities import CapabilitySet

logger = get_logger(__name__)

# Roles a tenant-scoped manager (OrgAdmin) may hand out inside its organization.
SCOPED_ASSIGNABLE_ROLES = frozenset({Role.USER, Role.ORG_ADMIN})


async def _write(
    session: AsyncSession,
    *,
    principal: User,
    target: User,
    field_name: str,
    change_key: str,
    new_value: object,
    action: str,
) -> MutationResult[User]:
    previous = getattr(target, field_name)
    try:
        entry = await patch_audited(
            session,
            target,
            {field_name: new_value, "updated_at": utcnow()},
            scope="user",
            actor=principal,
            action=action,
            changes=[{"key": change_key, "from": previous, "to": new_value}],
            organization_id=target.organization_id,
        )
    except PersistenceUnavailableError:
        logger.exception("principal.update_failed", extra={"user_id": str(target.id), "action": action})
        return MutationResult.rejected(target, ErrorKind.PERSISTENCE_UNAVAILABLE)
    logger.info(
        "principal.updated",
        extra={
            "user_id": str(target.id),
            "actor_id": str(principal.id),
            "action": action,
            "from": previous,
            "to": new_value,
        },
    )
    return MutationResult.success(target, audit_entry=entry)


async def set_principal_role(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    target: User,
    new_role: str,
) -> MutationResult[User]:
    """Assign a role to ``target``.

    Only a SuperAdmin may grant or revoke SuperAdmin. Scoped managers are
    limited to ``SCOPED_ASSIGNABLE_ROLES`` within their organization.
    """
    role = parse_role(new_role)
    if role is None:
        return MutationResult.rejected(target, ErrorKind.VALIDATION_FAILED, "Unknown role.")
    if not capabilities.can_manage_users_in(target.organization_id):
        return MutationResult.rejected(target, ErrorKind.FORBIDDEN)
    current = parse_role(target.role)
    touches_super_admin = Role.SUPER_ADMIN in {role, current}
    if touches_super_admin and not capabilities.is_unrestricted:
        return MutationResult.rejected(
            target, ErrorKind.FORBIDDEN, "Only a SuperAdmin may grant or revoke SuperAdmin."
        )
    if not capabilities.manages_users_globally and role not in SCOPED_ASSIGNABLE_ROLES:
        return MutationResult.rejected(target, ErrorKind.FORBIDDEN)
    if target.role == role.value:
        return MutationResult.rejected(target, ErrorKind.NOOP)
    return await _write(
        session,
        principal=principal,
        target=target,
        field_name="role",
        change_key="role",
        new_value=role.value,
        action="role_change",
    )


async def set_principal_active(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    target: User,
    active: bool,
) -> MutationResult[User]:
    """Activate or deactivate ``target``; principals are never deleted."""
    if not capabilities.can_manage_users_in(target.organization_id):
        return MutationResult.rejected(target, ErrorKind.FORBIDDEN)
    if parse_role(target.role) == Role.SUPER_ADMIN and not capabilities.is_unrestricted:
        return MutationResult.rejected(target, ErrorKind.FORBIDDEN)
    if not active and target.id == principal.id:
        return MutationResult.rejected(
            target, ErrorKind.VALIDATION_FAILED, "Principals cannot deactivate themselves."
        )
    if target.is_active == active:
        return MutationResult.rejected(target, ErrorKind.NOOP)
    return await _write(
        session,
        principal=principal,
        target=target,
        field_name="is_active",
        change_key="isActive",
        new_value=active,
        action="activation_change",
    )
