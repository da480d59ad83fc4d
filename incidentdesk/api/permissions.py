"""Client-reported permission change log."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, status

from incidentdesk.api.deps import PRINCIPAL_DEP, SESSION_DEP, PrincipalContext, raise_for_result
from incidentdesk.schemas.audit import AuditEntryRead
from incidentdesk.schemas.permissions import PermissionLogCreate
from incidentdesk.services.permissions import log_permission_change

if TYPE_CHECKING:
    from sqlmodel.ext.asyncio.session import AsyncSession

router = APIRouter(prefix="/permissions", tags=["permissions"])


@router.post("/log", response_model=AuditEntryRead, status_code=status.HTTP_201_CREATED)
async def create_permission_log(
    payload: PermissionLogCreate,
    ctx: PrincipalContext = PRINCIPAL_DEP,
    session: AsyncSession = SESSION_DEP,
) -> AuditEntryRead:
    result = raise_for_result(
        await log_permission_change(
            session,
            principal=ctx.user,
            capabilities=ctx.capabilities,
            scope=payload.scope,
            organization_id=payload.organization_id,
            user_id=payload.user_id,
            action=payload.action,
            changes=[change.model_dump(by_alias=True) for change in payload.changes],
            note=payload.note,
        )
    )
    return AuditEntryRead.model_validate(result.subject, from_attributes=True)
