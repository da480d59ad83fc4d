"""Incident creation, visibility-scoped reads, and the guarded write path."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm.attributes import set_committed_value
from sqlmodel import col

from incidentdesk.core.logging import get_logger
from incidentdesk.core.time import utcnow
from incidentdesk.db import crud
from incidentdesk.models.incidents import IMPACT_LEVELS, PUBLISHED_STATUSES, Incident
from incidentdesk.services.audit import record_audit
from incidentdesk.services.capabilities import Capability
from incidentdesk.services.notifications import IncidentNotification, enqueue_notification
from incidentdesk.services.results import ErrorKind, MutationResult, PersistenceUnavailableError

if TYPE_CHECKING:
    from collections.abc import Mapping, Sequence
    from uuid import UUID

    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.db.query_manager import QuerySet
    from incidentdesk.models.users import User
    from incidentdesk.services.capabilities import CapabilitySet

logger = get_logger(__name__)


def can_view_incident(
    principal: User,
    capabilities: CapabilitySet,
    incident: Incident,
) -> bool:
    """Return whether the principal may read the incident."""
    if capabilities.has(Capability.VIEW_ALL):
        return True
    if principal.organization_id is not None and incident.organization_id == principal.organization_id:
        return True
    return incident.visibility == "public" and incident.status in PUBLISHED_STATUSES


def visible_incidents(
    principal: User,
    capabilities: CapabilitySet,
    *,
    status: str | None = None,
    visibility: str | None = None,
) -> QuerySet[Incident]:
    """Build the incident query scoped to what the principal may read."""
    query = Incident.objects.all()
    if not capabilities.has(Capability.VIEW_ALL):
        public_published = and_(
            col(Incident.visibility) == "public",
            col(Incident.status).in_(sorted(PUBLISHED_STATUSES)),
        )
        if principal.organization_id is not None:
            query = query.filter(
                or_(col(Incident.organization_id) == principal.organization_id, public_published),
            )
        else:
            query = query.filter(public_published)
    if status is not None:
        query = query.filter(col(Incident.status) == status)
    if visibility is not None:
        query = query.filter(col(Incident.visibility) == visibility)
    return query.order_by(col(Incident.created_at).desc())


async def create_incident(
    session: AsyncSession,
    *,
    principal: User,
    organization_id: UUID,
    title: str,
    description: str = "",
    impact_status: str = "low",
) -> Incident:
    """Insert a Draft/private incident owned by the principal."""
    if impact_status not in IMPACT_LEVELS:
        raise ValueError(f"Unknown impact status: {impact_status!r}")
    now = utcnow()
    incident = Incident(
        organization_id=organization_id,
        created_by=principal.id,
        title=title.strip(),
        description=description,
        impact_status=impact_status,
        status_history=[],
        created_at=now,
        updated_at=now,
        updated_by=principal.id,
    )
    session.add(incident)
    await session.commit()
    await session.refresh(incident)
    logger.info(
        "incident.created",
        extra={"incident_id": str(incident.id), "organization_id": str(organization_id)},
    )
    return incident


def _detach(session: AsyncSession, incident: Incident) -> None:
    # Rollback expires every attached row; a detached one keeps its loaded values.
    if incident in session:
        session.expunge(incident)


async def write_incident_change(
    session: AsyncSession,
    *,
    principal: User,
    incident: Incident,
    values: Mapping[str, Any],
    action: str,
    changes: Sequence[Mapping[str, object]],
    event_type: str,
) -> MutationResult[Incident]:
    """Persist a checked change with a version-guarded UPDATE, then audit and notify.

    The UPDATE matches on the version the caller read; zero matched rows mean a
    concurrent writer won and nothing is written. A rejected write returns the
    incident detached, as it was read. Audit and notification failures after
    the commit are logged without undoing the change.
    """
    incident_id = incident.id
    actor_id = principal.id
    organization_id = incident.organization_id
    read_version = incident.version
    values = {**values, "version": read_version + 1}
    try:
        matched = await crud.update_where(
            session,
            Incident,
            col(Incident.id) == incident_id,
            col(Incident.version) == read_version,
            commit=False,
            **values,
        )
        if matched == 0:
            _detach(session, incident)
            await session.rollback()
            logger.info(
                "incident.write.conflict",
                extra={"incident_id": str(incident_id), "read_version": read_version},
            )
            return MutationResult.rejected(
                incident,
                ErrorKind.CONFLICT_DETECTED,
                "Incident was modified concurrently; refresh and retry.",
            )
        await session.commit()
    except SQLAlchemyError:
        logger.exception("incident.write.failed", extra={"incident_id": str(incident_id)})
        _detach(session, incident)
        await session.rollback()
        return MutationResult.rejected(
            incident,
            ErrorKind.PERSISTENCE_UNAVAILABLE,
            "Incident store is unavailable; retry later.",
        )

    for key, value in values.items():
        set_committed_value(incident, key, value)

    # Detach so a rolled-back audit write cannot expire the committed snapshot.
    session.expunge(incident)
    audit_entry = None
    try:
        audit_entry = await record_audit(
            session,
            scope="incident",
            target_id=incident_id,
            actor_id=actor_id,
            actor_email=principal.email,
            organization_id=organization_id,
            action=action,
            changes=changes,
        )
    except PersistenceUnavailableError:
        logger.exception(
            "audit.record.failed",
            extra={"incident_id": str(incident_id), "action": action},
        )
    finally:
        session.add(incident)

    enqueue_notification(
        IncidentNotification(
            event_type=event_type,
            organization_id=organization_id,
            incident_id=incident_id,
            payload={
                "actor_id": str(actor_id),
                "changes": [dict(change) for change in changes],
            },
        )
    )
    return MutationResult.success(incident, audit_entry=audit_entry)
