"""Role/capability resolver for principals and their organization."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from uuid import UUID

    from incidentdesk.models.organizations import Organization
    from incidentdesk.models.users import User


class Role(str, Enum):
    """Fixed principal roles."""

    SUPER_ADMIN = "SuperAdmin"
    ADMIN = "Admin"
    EDITOR = "Editor"
    USER = "User"
    ORG_ADMIN = "OrgAdmin"


class Capability(str, Enum):
    """Named permissions granted by the resolver."""

    VIEW_ALL = "viewAll"
    MANAGE_USERS = "manageUsers"
    MANAGE_ORGANIZATIONS = "manageOrganizations"
    REVIEW_INCIDENTS = "reviewIncidents"
    PUBLISH_INCIDENTS = "publishIncidents"
    MANAGE_CATEGORIES = "manageCategories"
    GENERATE_REPORTS = "generateReports"
    EDIT_VISIBILITY = "editVisibility"


_ROLE_ALIASES: dict[str, Role] = {role.value.lower(): role for role in Role}
_ROLE_ALIASES.update({"org_admin": Role.ORG_ADMIN, "superadmin": Role.SUPER_ADMIN})

# Core-organization role → capability set
CORE_ROLE_CAPABILITIES: dict[Role, frozenset[Capability]] = {
    Role.ADMIN: frozenset(
        {
            Capability.VIEW_ALL,
            Capability.REVIEW_INCIDENTS,
            Capability.PUBLISH_INCIDENTS,
            Capability.GENERATE_REPORTS,
            Capability.MANAGE_USERS,
            Capability.MANAGE_CATEGORIES,
            Capability.EDIT_VISIBILITY,
        }
    ),
    Role.EDITOR: frozenset(
        {
            Capability.VIEW_ALL,
            Capability.REVIEW_INCIDENTS,
            Capability.PUBLISH_INCIDENTS,
            Capability.GENERATE_REPORTS,
            Capability.EDIT_VISIBILITY,
        }
    ),
}

def parse_role(value: object) -> Role | None:
    """Map a stored role string to a ``Role``; unknown values yield ``None``."""
    if isinstance(value, Role):
        return value
    if not isinstance(value, str):
        return None
    return _ROLE_ALIASES.get(value.strip().lower())


@dataclass(frozen=True)
class CapabilitySet:
    """Capabilities held by a principal.

    ``scope_organization_id`` narrows ``manageUsers`` to a single tenant
    (OrgAdmin); ``None`` means the grant is global.
    """

    capabilities: frozenset[Capability] = field(default_factory=frozenset)
    scope_organization_id: UUID | None = None

    def has(self, capability: Capability) -> bool:
        return capability in self.capabilities

    def can_manage_users_in(self, organization_id: UUID | None) -> bool:
        if not self.has(Capability.MANAGE_USERS):
            return False
        if self.scope_organization_id is None:
            return True
        return organization_id is not None and organization_id == self.scope_organization_id

    @property
    def manages_users_globally(self) -> bool:
        return self.has(Capability.MANAGE_USERS) and self.scope_organization_id is None

    @property
    def is_unrestricted(self) -> bool:
        """True only for the SuperAdmin grant: every capability, unscoped."""
        return self.capabilities == frozenset(Capability) and self.scope_organization_id is None

    def as_list(self) -> list[str]:
        return sorted(capability.value for capability in self.capabilities)


EMPTY_CAPABILITIES = CapabilitySet()
ALL_CAPABILITIES = CapabilitySet(capabilities=frozenset(Capability))


def is_core_organization(
    organization: Organization | None,
    *,
    core_organization_id: UUID | None = None,
) -> bool:
    """Return whether an organization carries cross-tenant privileges."""
    if organization is None:
        return False
    if core_organization_id is not None and organization.id == core_organization_id:
        return True
    return organization.org_type == "core"


def resolve_capabilities(
    principal: User | None,
    organization: Organization | None,
    *,
    core_organization_id: UUID | None = None,
    super_admin_emails: Iterable[str] = (),
) -> CapabilitySet:
    """Compute the capability set for a principal.

    Pure function over already-loaded rows. Fails closed: a missing principal
    or unknown role yields an empty set.
    """
    if principal is None:
        return EMPTY_CAPABILITIES

    email = (principal.email or "").strip().lower()
    if email and email in {e.strip().lower() for e in super_admin_emails}:
        return ALL_CAPABILITIES

    role = parse_role(principal.role)
    if role is None:
        return EMPTY_CAPABILITIES
    if role == Role.SUPER_ADMIN:
        return ALL_CAPABILITIES
    if role == Role.ORG_ADMIN:
        if principal.organization_id is None:
            return EMPTY_CAPABILITIES
        return CapabilitySet(
            capabilities=frozenset({Capability.MANAGE_USERS}),
            scope_organization_id=principal.organization_id,
        )

    member_org = organization if (
        organization is not None and organization.id == principal.organization_id
    ) else None
    if not is_core_organization(member_org, core_organization_id=core_organization_id):
        return EMPTY_CAPABILITIES
    return CapabilitySet(capabilities=CORE_ROLE_CAPABILITIES.get(role, frozenset()))
