"""Reusable FastAPI dependencies for principal context and incident access.

Routes compose these instead of re-implementing lookups: they resolve the
authenticated principal, its organization and capability set, and load
incidents or users with the caller's visibility applied.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar
from uuid import UUID

from fastapi import Depends, HTTPException, status

from incidentdesk.core.auth import AuthContext, get_auth_context
from incidentdesk.core.config import settings
from incidentdesk.core.error_handling import MutationRejectedError
from incidentdesk.db.session import get_session
from incidentdesk.models.incidents import Incident
from incidentdesk.models.organizations import Organization
from incidentdesk.models.users import User
from incidentdesk.services.capabilities import CapabilitySet, resolve_capabilities
from incidentdesk.services.incidents import can_view_incident
from incidentdesk.services.results import ErrorKind, MutationResult

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

AUTH_DEP = Depends(get_auth_context)
SESSION_DEP = Depends(get_session)

SubjectT = TypeVar("SubjectT")


@dataclass
class PrincipalContext:
    """Authenticated principal with its organization and resolved capabilities."""

    user: User
    organization: Organization | None
    capabilities: CapabilitySet


async def get_principal_context(
    auth: AuthContext = AUTH_DEP,
    session: AsyncSession = SESSION_DEP,
) -> PrincipalContext:
    """Load the principal's organization and resolve its capability set."""
    organization = None
    if auth.user.organization_id is not None:
        organization = await Organization.objects.by_id(auth.user.organization_id).first(session)
    capabilities = resolve_capabilities(
        auth.user,
        organization,
        core_organization_id=settings.core_organization_uuid,
        super_admin_emails=settings.super_admin_email_set,
    )
    return PrincipalContext(user=auth.user, organization=organization, capabilities=capabilities)


PRINCIPAL_DEP = Depends(get_principal_context)


async def get_incident_or_404(
    incident_id: UUID,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> Incident:
    """Load an incident the caller may read; hidden incidents are reported as missing."""
    incident = await Incident.objects.by_id(incident_id).first(session)
    if incident is None or not can_view_incident(ctx.user, ctx.capabilities, incident):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return incident


async def get_user_or_404(
    user_id: UUID,
    session: AsyncSession = SESSION_DEP,
) -> User:
    user = await User.objects.by_id(user_id).first(session)
    if user is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return user


async def get_organization_or_404(
    organization_id: UUID,
    session: AsyncSession = SESSION_DEP,
) -> Organization:
    organization = await Organization.objects.by_id(organization_id).first(session)
    if organization is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND)
    return organization


def raise_for_result(result: MutationResult[SubjectT]) -> MutationResult[SubjectT]:
    """Surface a rejected mutation as an HTTP error; no-ops pass through."""
    if result.error is not None and result.error != ErrorKind.NOOP:
        raise MutationRejectedError(result.error, result.message)
    return result
