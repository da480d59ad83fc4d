"""Audit trail query and CSV export endpoints."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response

from incidentdesk.api.deps import PRINCIPAL_DEP, SESSION_DEP, PrincipalContext
from incidentdesk.core.config import settings
from incidentdesk.core.logging import get_logger
from incidentdesk.schemas.audit import AuditEntryRead, AuditPageRead
from incidentdesk.services.audit import (
    AuditFilter,
    InvalidCursorError,
    export_audit_csv,
    iter_audit,
    query_audit,
)
from incidentdesk.services.capabilities import Capability

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

logger = get_logger(__name__)
router = APIRouter(prefix="/audit", tags=["audit"])
LIMIT_QUERY = Query(default=None, ge=1)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


async def get_audit_filter(
    ctx: PrincipalContext = PRINCIPAL_DEP,
    scope: str | None = None,
    target_id: str | None = None,
    actor_id: UUID | None = None,
    actor_email: str | None = None,
    organization_id: UUID | None = None,
    action: str | None = None,
    key: str | None = None,
    created_from: datetime | None = None,
    created_to: datetime | None = None,
) -> AuditFilter:
    """Build the caller's audit filter; tenant-scoped managers see only their organization."""
    capabilities = ctx.capabilities
    if not (
        capabilities.has(Capability.VIEW_ALL)
        or capabilities.has(Capability.MANAGE_ORGANIZATIONS)
        or capabilities.has(Capability.MANAGE_USERS)
    ):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    scoped_org = capabilities.scope_organization_id
    if scoped_org is not None:
        if organization_id is not None and organization_id != scoped_org:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        organization_id = scoped_org
    return AuditFilter(
        scope=scope,
        target_id=target_id,
        actor_id=actor_id,
        actor_email=actor_email,
        organization_id=organization_id,
        action=action,
        key=key,
        created_from=_naive_utc(created_from),
        created_to=_naive_utc(created_to),
    )


AUDIT_FILTER_DEP = Depends(get_audit_filter)


@router.get("", response_model=AuditPageRead)
async def list_audit_entries(
    audit_filter: AuditFilter = AUDIT_FILTER_DEP,
    session: AsyncSession = SESSION_DEP,
    cursor: str | None = None,
    limit: int | None = LIMIT_QUERY,
) -> AuditPageRead:
    """Query the audit trail, newest first, with cursor pagination."""
    page_size = min(limit or settings.audit_page_size, settings.audit_page_size_max)
    try:
        page = await query_audit(session, audit_filter, cursor=cursor, limit=page_size)
    except InvalidCursorError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        ) from exc
    return AuditPageRead(
        items=[AuditEntryRead.model_validate(entry, from_attributes=True) for entry in page.entries],
        next_cursor=page.next_cursor,
    )


@router.get("/export.csv")
async def export_audit_entries(
    audit_filter: AuditFilter = AUDIT_FILTER_DEP,
    session: AsyncSession = SESSION_DEP,
) -> Response:
    """Download the filtered audit trail as CSV, one row per changed key."""
    entries = [
        entry
        async for entry in iter_audit(
            session, audit_filter, page_size=settings.audit_page_size_max
        )
    ]
    logger.info("audit.export", extra={"rows": len(entries)})
    filename = f"audit-{datetime.now(UTC).strftime('%Y%m%dT%H%M%SZ')}.csv"
    return Response(
        content=export_audit_csv(entries),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
