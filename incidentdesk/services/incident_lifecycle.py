"""Incident status state machine.

The transition rules are evaluated in a fixed order and the first match wins:

1. an unknown target status is rejected as ``VALIDATION_FAILED``;
2. a ``Closed`` incident accepts no transition from anyone (``TERMINAL_STATE``);
3. moving to the current status is a ``NOOP``;
4. holders of ``reviewIncidents`` may move to any status;
5. the incident's creator may submit it from ``Draft`` to ``Review``;
6. everything else is ``FORBIDDEN``.

``transition_incident_status`` is the only code path that writes
``Incident.status``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from incidentdesk.core.logging import get_logger
from incidentdesk.core.time import utcnow
from incidentdesk.models.incidents import INCIDENT_STATUSES, PUBLISHED_STATUSES, TERMINAL_STATUSES
from incidentdesk.services.capabilities import Capability
from incidentdesk.services.incidents import write_incident_change
from incidentdesk.services.results import ErrorKind, MutationResult

if TYPE_CHECKING:
    from datetime import datetime

    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.models.incidents import Incident
    from incidentdesk.models.users import User
    from incidentdesk.services.capabilities import CapabilitySet

logger = get_logger(__name__)

STATUS_CHANGE_ACTION = "status_change"
STATUS_CHANGED_EVENT = "incident.status_changed"

_REJECTION_MESSAGES = {
    ErrorKind.VALIDATION_FAILED: "Unknown incident status.",
    ErrorKind.TERMINAL_STATE: "Closed incidents cannot change status.",
    ErrorKind.NOOP: "Incident already has this status.",
    ErrorKind.FORBIDDEN: "Not allowed to move this incident to the requested status.",
}


def check_transition(
    principal: User,
    capabilities: CapabilitySet,
    incident: Incident,
    target_status: str,
) -> ErrorKind | None:
    """Return the reason a transition is refused, or ``None`` when allowed."""
    if target_status not in INCIDENT_STATUSES:
        return ErrorKind.VALIDATION_FAILED
    if incident.status in TERMINAL_STATUSES:
        return ErrorKind.TERMINAL_STATE
    if target_status == incident.status:
        return ErrorKind.NOOP
    if capabilities.has(Capability.REVIEW_INCIDENTS):
        return None
    if (
        principal.id == incident.created_by
        and incident.status == "Draft"
        and target_status == "Review"
    ):
        return None
    return ErrorKind.FORBIDDEN


def transition_values(
    incident: Incident,
    target_status: str,
    *,
    actor_id: Any,
    actor_name: str | None,
    now: datetime,
) -> dict[str, Any]:
    """Column values written by an allowed transition (excluding ``version``)."""
    previous = incident.status
    history = list(incident.status_history or [])
    history.append(
        {
            "changed_at": now.isoformat(),
            "changed_by": str(actor_id),
            "changed_by_name": actor_name,
            "previous_status": previous,
            "new_status": target_status,
        }
    )
    values: dict[str, Any] = {
        "status": target_status,
        "status_history": history,
        "updated_at": now,
        "updated_by": actor_id,
    }
    if target_status == "Approved":
        values["approved_by"] = actor_id
        values["approved_at"] = now
    if target_status in PUBLISHED_STATUSES and previous not in PUBLISHED_STATUSES:
        values["published_by"] = actor_id
        values["published_at"] = now
    return values


async def transition_incident_status(
    session: AsyncSession,
    *,
    principal: User,
    capabilities: CapabilitySet,
    incident: Incident,
    target_status: str,
) -> MutationResult[Incident]:
    """Move an incident to ``target_status`` when the rules allow it."""
    rejection = check_transition(principal, capabilities, incident, target_status)
    if rejection is not None:
        logger.info(
            "incident.status.rejected",
            extra={
                "incident_id": str(incident.id),
                "actor_id": str(principal.id),
                "from_status": incident.status,
                "to_status": target_status,
                "reason": rejection.value,
            },
        )
        return MutationResult.rejected(incident, rejection, _REJECTION_MESSAGES[rejection])

    previous = incident.status
    values = transition_values(
        incident,
        target_status,
        actor_id=principal.id,
        actor_name=principal.name or principal.email,
        now=utcnow(),
    )
    result = await write_incident_change(
        session,
        principal=principal,
        incident=incident,
        values=values,
        action=STATUS_CHANGE_ACTION,
        changes=[{"key": "status", "from": previous, "to": target_status}],
        event_type=STATUS_CHANGED_EVENT,
    )
    if result.changed:
        logger.info(
            "incident.status.changed",
            extra={
                "incident_id": str(incident.id),
                "actor_id": str(principal.id),
                "from_status": previous,
                "to_status": target_status,
            },
        )
    return result
