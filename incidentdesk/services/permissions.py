"""Organization and user permission maps, with audited updates.

Organizations carry a map of boolean feature flags. A user inherits the map of
their organization unless their own map is an override, marked by
``inheritedFromOrg: false``. Every change is diffed key by key and recorded as
one audit entry.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from incidentdesk.core.logging import get_logger
from incidentdesk.core.time import utcnow
from incidentdesk.services.audit import diff_changes, patch_audited, record_audit
from incidentdesk.services.capabilities import Capability
from incidentdesk.services.results import ErrorKind, MutationResult, PersistenceUnavailableError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.models.audit_entries import AuditEntry
    from incidentdesk.models.organizations import Organization
    from incidentdesk.models.users import User
    from incidentdesk.services.capabilities import CapabilitySet

logger = get_logger(__name__)

ALL_PERMISSIONS = (
    "viewIncidents",
    "createIncidents",
    "editIncidents",
    "deleteIncidents",
    "viewReports",
    "viewAIReports",
    "generateAIReports",
    "viewQuotes",
    "manageUsers",
    "manageCategories",
    "manageSettings",
)

DEFAULT_PERMISSIONS: dict[str, bool] = {
    "viewIncidents": True,
    "createIncidents": False,
    "editIncidents": False,
    "deleteIncidents": False,
    "viewReports": True,
    "viewAIReports": False,
    "generateAIReports": False,
    "viewQuotes": True,
    "manageUsers": False,
    "manageCategories": False,
    "manageSettings": False,
}

INHERITED_FLAG = "inheritedFromOrg"
LOGGABLE_SCOPES = frozenset({"organization", "user"})


def _flags(permission_map: Mapping[str, Any] | None) -> dict[str, bool]:
    """Known permission flags of a stored map, filled from the defaults."""
    merged = dict(DEFAULT_PERMISSIONS)
    for key in ALL_PERMISSIONS:
        if permission_map is not None and key in permission_map:
            merged[key] = bool(permission_map[key])
    return merged


def has_override_map(permission_map: Mapping[str, Any] | None) -> bool:
    return bool(permission_map) and permission_map.get(INHERITED_FLAG) is False


def has_override(principal: User) -> bool:
    return has_override_map(principal.permissions)


def get_effective_permissions(
    principal: User | None,
    organization: Organization | None,
) -> dict[str, bool]:
    """Resolve the flags that apply to a principal.

    The principal's own map wins when it is an override; otherwise the
    organization map (or the defaults) applies.
    """
    if principal is not None and has_override(principal):
        return {**_flags(principal.permissions), INHERITED_FLAG: False}
    org_map = organization.permissions if organization is not None else None
    return {**_flags(org_map), INHERITED_FLAG: True}


def diff_permissions(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
) -> list[dict[str, object]]:
    return diff_changes(before, after, keys=ALL_PERMISSIONS)


def validate_permission_updates(updates: Mapping[str, Any]) -> bool:
    return bool(updates) and all(
        key in ALL_PERMISSIONS and isinstance(value, bool) for key, value in updates.items()
    )


async def update_organization_permissions(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    organization: Organization,
    updates: Mapping[str, bool],
    note: str | None = None,
) -> MutationResult[Organization]:
    """Merge flag updates into an organization's permission map."""
    if not validate_permission_updates(updates):
        return MutationResult.rejected(
            organization, ErrorKind.VALIDATION_FAILED, "Unknown or non-boolean permission keys."
        )
    if not capabilities.has(Capability.MANAGE_ORGANIZATIONS):
        return MutationResult.rejected(organization, ErrorKind.FORBIDDEN)

    before = _flags(organization.permissions)
    after = {**before, **updates}
    changes = diff_permissions(before, after)
    if not changes:
        return MutationResult.rejected(organization, ErrorKind.NOOP)

    now = utcnow()
    action = "set" if organization.permissions is None else "update"
    try:
        entry = await patch_audited(
            session,
            organization,
            {"permissions": {**after, "lastUpdated": now.isoformat()}, "updated_at": now},
            scope="organization",
            actor=principal,
            action=action,
            changes=changes,
            organization_id=organization.id,
            note=note,
        )
    except PersistenceUnavailableError:
        logger.exception(
            "permissions.organization.update_failed",
            extra={"organization_id": str(organization.id)},
        )
        return MutationResult.rejected(organization, ErrorKind.PERSISTENCE_UNAVAILABLE)
    logger.info(
        "permissions.organization.updated",
        extra={"organization_id": str(organization.id), "keys": entry.keys},
    )
    return MutationResult.success(organization, audit_entry=entry)


async def update_user_permissions(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    target: User,
    organization: Organization | None,
    updates: Mapping[str, bool] | None = None,
    reset: bool = False,
    note: str | None = None,
) -> MutationResult[User]:
    """Override a user's flags, or with ``reset`` return them to inheriting."""
    if not reset and not validate_permission_updates(updates or {}):
        return MutationResult.rejected(
            target, ErrorKind.VALIDATION_FAILED, "Unknown or non-boolean permission keys."
        )
    if not capabilities.can_manage_users_in(target.organization_id):
        return MutationResult.rejected(target, ErrorKind.FORBIDDEN)

    overriding = has_override(target)
    before = get_effective_permissions(target, organization)
    now = utcnow()
    if reset:
        if not overriding:
            return MutationResult.rejected(target, ErrorKind.NOOP)
        after = get_effective_permissions(None, organization)
        stored = {**(target.permissions or {}), INHERITED_FLAG: True, "lastUpdated": now.isoformat()}
        action = "reset"
    else:
        after = {**before, **(updates or {}), INHERITED_FLAG: False}
        stored = {**_flags(after), INHERITED_FLAG: False, "lastUpdated": now.isoformat()}
        action = "update" if overriding else "set"

    changes = diff_permissions(before, after)
    inherited_before = not overriding
    inherited_after = not has_override_map(stored)
    if inherited_before != inherited_after:
        changes.append({"key": INHERITED_FLAG, "from": inherited_before, "to": inherited_after})
    if not changes:
        return MutationResult.rejected(target, ErrorKind.NOOP)

    try:
        entry = await patch_audited(
            session,
            target,
            {"permissions": stored, "updated_at": now},
            scope="user",
            actor=principal,
            action=action,
            changes=changes,
            organization_id=target.organization_id,
            note=note,
        )
    except PersistenceUnavailableError:
        logger.exception("permissions.user.update_failed", extra={"user_id": str(target.id)})
        return MutationResult.rejected(target, ErrorKind.PERSISTENCE_UNAVAILABLE)
    logger.info(
        "permissions.user.updated",
        extra={"user_id": str(target.id), "action": action, "keys": entry.keys},
    )
    return MutationResult.success(target, audit_entry=entry)


async def log_permission_change(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    scope: str,
    organization_id: UUID,
    action: str,
    changes: Sequence[Mapping[str, object]],
    user_id: UUID | None = None,
    note: str | None = None,
) -> MutationResult[AuditEntry | None]:
    """Record a permission change reported by a client.

    Only organization managers and global user managers may write these.
    """
    if not (
        capabilities.has(Capability.MANAGE_ORGANIZATIONS) or capabilities.manages_users_globally
    ):
        return MutationResult.rejected(None, ErrorKind.FORBIDDEN)
    if (
        scope not in LOGGABLE_SCOPES
        or not action.strip()
        or not changes
        or any("key" not in change for change in changes)
        or (scope == "user" and user_id is None)
    ):
        return MutationResult.rejected(
            None, ErrorKind.VALIDATION_FAILED, "Missing required log data."
        )
    try:
        entry = await record_audit(
            session,
            scope=scope,
            target_id=user_id if scope == "user" and user_id is not None else organization_id,
            actor_id=principal.id,
            actor_email=principal.email,
            organization_id=organization_id,
            action=action.strip(),
            changes=changes,
            note=note,
        )
    except PersistenceUnavailableError:
        logger.exception("permissions.log.failed", extra={"organization_id": str(organization_id)})
        return MutationResult.rejected(None, ErrorKind.PERSISTENCE_UNAVAILABLE)
    return MutationResult.success(entry, audit_entry=entry)
