"""Incident endpoints: report, read, and the guarded workflow and field changes."""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from incidentdesk.api.deps import (
    PRINCIPAL_DEP,
    SESSION_DEP,
    PrincipalContext,
    get_incident_or_404,
    raise_for_result,
)
from incidentdesk.db.pagination import paginate
from incidentdesk.models.incidents import Incident
from incidentdesk.schemas.incidents import (
    EditorialNotesChange,
    ImpactChange,
    IncidentCreate,
    IncidentRead,
    MutationRead,
    StatusChange,
    VisibilityChange,
)
from incidentdesk.schemas.pagination import DefaultLimitOffsetPage
from incidentdesk.services.capabilities import Capability
from incidentdesk.services.incident_lifecycle import transition_incident_status
from incidentdesk.services.incident_policy import set_editorial_notes, set_impact, set_visibility
from incidentdesk.services.incidents import create_incident, visible_incidents

if TYPE_CHECKING:
    from fastapi_pagination.limit_offset import LimitOffsetPage
    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.services.results import MutationResult

router = APIRouter(prefix="/incidents", tags=["incidents"])
INCIDENT_DEP = Depends(get_incident_or_404)
STATUS_QUERY = Query(default=None, alias="status")
VISIBILITY_QUERY = Query(default=None)


def _mutation_read(result: MutationResult[Incident]) -> MutationRead:
    raise_for_result(result)
    return MutationRead(
        incident=IncidentRead.model_validate(result.subject, from_attributes=True),
        changed=result.changed,
        audit_entry_id=result.audit_entry.id if result.audit_entry is not None else None,
    )


@router.post("", response_model=IncidentRead, status_code=status.HTTP_201_CREATED)
async def report_incident(
    payload: IncidentCreate,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> IncidentRead:
    """Report a new incident as a private draft."""
    organization_id = payload.organization_id or ctx.user.organization_id
    if organization_id is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Reporter has no organization.",
        )
    if organization_id != ctx.user.organization_id and not ctx.capabilities.has(
        Capability.VIEW_ALL
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    incident = await create_incident(
        session,
        principal=ctx.user,
        organization_id=organization_id,
        title=payload.title,
        description=payload.description,
        impact_status=payload.impact_status,
    )
    return IncidentRead.model_validate(incident, from_attributes=True)


@router.get("", response_model=DefaultLimitOffsetPage[IncidentRead])
async def list_incidents(
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
    status_filter: str | None = STATUS_QUERY,
    visibility: str | None = VISIBILITY_QUERY,
) -> LimitOffsetPage[IncidentRead]:
    """List incidents visible to the caller, newest first."""
    query = visible_incidents(
        ctx.user,
        ctx.capabilities,
        status=status_filter,
        visibility=visibility,
    )

    def _transform(items: Sequence[Any]) -> Sequence[Any]:
        return [IncidentRead.model_validate(item, from_attributes=True) for item in items]

    return await paginate(session, query.statement, transformer=_transform)


@router.get("/{incident_id}", response_model=IncidentRead)
async def read_incident(incident: Incident = INCIDENT_DEP) -> IncidentRead:
    return IncidentRead.model_validate(incident, from_attributes=True)


@router.post("/{incident_id}/status", response_model=MutationRead)
async def change_incident_status(
    payload: StatusChange,
    incident: Incident = INCIDENT_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> MutationRead:
    """Move the incident through the review/publish workflow."""
    result = await transition_incident_status(
        session,
        principal=ctx.user,
        capabilities=ctx.capabilities,
        incident=incident,
        target_status=payload.status,
    )
    return _mutation_read(result)


@router.post("/{incident_id}/visibility", response_model=MutationRead)
async def change_incident_visibility(
    payload: VisibilityChange,
    incident: Incident = INCIDENT_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> MutationRead:
    result = await set_visibility(
        session,
        principal=ctx.user,
        capabilities=ctx.capabilities,
        incident=incident,
        new_visibility=payload.visibility,
    )
    return _mutation_read(result)


@router.post("/{incident_id}/impact", response_model=MutationRead)
async def change_incident_impact(
    payload: ImpactChange,
    incident: Incident = INCIDENT_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> MutationRead:
    result = await set_impact(
        session,
        principal=ctx.user,
        incident=incident,
        new_impact=payload.impact_status,
    )
    return _mutation_read(result)


@router.post("/{incident_id}/notes", response_model=MutationRead)
async def change_incident_notes(
    payload: EditorialNotesChange,
    incident: Incident = INCIDENT_DEP,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> MutationRead:
    """Replace the reviewers' internal notes on an incident."""
    result = await set_editorial_notes(
        session,
        principal=ctx.user,
        capabilities=ctx.capabilities,
        incident=incident,
        notes=payload.editorial_notes,
    )
    return _mutation_read(result)
