"""Visibility, impact-status, and editorial-note rules for incidents."""

from __future__ import annotations

from typing import TYPE_CHECKING

from incidentdesk.core.logging import get_logger
from incidentdesk.core.time import utcnow
from incidentdesk.models.incidents import IMPACT_LEVELS, TERMINAL_STATUSES, VISIBILITIES
from incidentdesk.services.capabilities import Capability
from incidentdesk.services.incidents import write_incident_change
from incidentdesk.services.results import ErrorKind, MutationResult

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.models.incidents import Incident
    from incidentdesk.models.users import User
    from incidentdesk.services.capabilities import CapabilitySet

logger = get_logger(__name__)

VISIBILITY_CHANGE_ACTION = "visibility_change"
IMPACT_CHANGE_ACTION = "impact_change"
NOTES_CHANGE_ACTION = "editorial_notes_change"


def check_visibility_change(
    capabilities: CapabilitySet,
    incident: Incident,
    new_visibility: str,
) -> ErrorKind | None:
    if new_visibility not in VISIBILITIES:
        return ErrorKind.VALIDATION_FAILED
    if not capabilities.has(Capability.EDIT_VISIBILITY):
        return ErrorKind.FORBIDDEN
    if incident.status in TERMINAL_STATUSES:
        return ErrorKind.TERMINAL_STATE
    if incident.visibility == new_visibility:
        return ErrorKind.NOOP
    return None


async def set_visibility(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    incident: Incident,
    new_visibility: str,
) -> MutationResult[Incident]:
    """Change whether an incident is public or private."""
    rejection = check_visibility_change(capabilities, incident, new_visibility)
    if rejection is not None:
        logger.info(
            "incident.visibility.rejected",
            extra={
                "incident_id": str(incident.id),
                "actor_id": str(principal.id),
                "reason": rejection.value,
            },
        )
        return MutationResult.rejected(incident, rejection)

    previous = incident.visibility
    return await write_incident_change(
        session,
        principal=principal,
        incident=incident,
        values={
            "visibility": new_visibility,
            "updated_at": utcnow(),
            "updated_by": principal.id,
        },
        action=VISIBILITY_CHANGE_ACTION,
        changes=[{"key": "visibility", "from": previous, "to": new_visibility}],
        event_type="incident.visibility_changed",
    )


async def set_impact(
    session: AsyncSession,
    *,
    principal: User,
    incident: Incident,
    new_impact: str,
) -> MutationResult[Incident]:
    """Change an incident's impact level.

    Any principal reaching this call may change impact, including on
    closed incidents.
    """
    if new_impact not in IMPACT_LEVELS:
        return MutationResult.rejected(incident, ErrorKind.VALIDATION_FAILED)
    if incident.impact_status == new_impact:
        return MutationResult.rejected(incident, ErrorKind.NOOP)

    previous = incident.impact_status
    return await write_incident_change(
        session,
        principal=principal,
        incident=incident,
        values={
            "impact_status": new_impact,
            "updated_at": utcnow(),
            "updated_by": principal.id,
        },
        action=IMPACT_CHANGE_ACTION,
        changes=[{"key": "impactStatus", "from": previous, "to": new_impact}],
        event_type="incident.impact_changed",
    )


def _clean_notes(notes: str | None) -> str | None:
    if notes is None:
        return None
    return notes.strip() or None


async def set_editorial_notes(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    incident: Incident,
    notes: str | None,
) -> MutationResult[Incident]:
    """Replace the internal editorial notes; blank text clears them.

    Notes are reviewer-only and freeze once the incident is closed.
    """
    if not capabilities.has(Capability.REVIEW_INCIDENTS):
        return MutationResult.rejected(incident, ErrorKind.FORBIDDEN)
    if incident.status in TERMINAL_STATUSES:
        return MutationResult.rejected(incident, ErrorKind.TERMINAL_STATE)
    cleaned = _clean_notes(notes)
    if incident.editorial_notes == cleaned:
        return MutationResult.rejected(incident, ErrorKind.NOOP)

    previous = incident.editorial_notes
    return await write_incident_change(
        session,
        principal=principal,
        incident=incident,
        values={
            "editorial_notes": cleaned,
            "updated_at": utcnow(),
            "updated_by": principal.id,
        },
        action=NOTES_CHANGE_ACTION,
        changes=[{"key": "editorialNotes", "from": previous, "to": cleaned}],
        event_type="incident.notes_changed",
    )
