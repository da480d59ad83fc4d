"""Append-only audit recorder: write, query, diff, and export entries."""

from __future__ import annotations

import base64
import binascii
import csv
import io
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import String, cast, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import col

from incidentdesk.core.logging import get_logger
from incidentdesk.core.time import utcnow
from incidentdesk.db import crud
from incidentdesk.models.audit_entries import AUDIT_SCOPES, AuditEntry
from incidentdesk.services.results import PersistenceUnavailableError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable, Mapping, Sequence

    from sqlmodel.ext.asyncio.session import AsyncSession

    from incidentdesk.db.crud import ModelT
    from incidentdesk.db.query_manager import QuerySet
    from incidentdesk.models.users import User

logger = get_logger(__name__)

EXPORT_COLUMNS = (
    "entry_id",
    "timestamp",
    "actor_email",
    "scope",
    "target_id",
    "action",
    "key",
    "from_value",
    "to_value",
    "note",
)


class InvalidCursorError(ValueError):
    """Raised when a continuation cursor cannot be decoded."""


@dataclass(frozen=True)
class AuditFilter:
    """Optional predicates applied to an audit query."""

    scope: str | None = None
    target_id: str | None = None
    actor_id: UUID | None = None
    actor_email: str | None = None
    organization_id: UUID | None = None
    action: str | None = None
    key: str | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None


@dataclass(frozen=True)
class AuditPage:
    """One page of entries, newest first, plus the cursor for the next page."""

    entries: list[AuditEntry]
    next_cursor: str | None


def diff_changes(
    before: Mapping[str, object] | None,
    after: Mapping[str, object] | None,
    *,
    keys: Sequence[str] | None = None,
) -> list[dict[str, object]]:
    """Return ordered ``{key, from, to}`` records for keys whose values differ.

    Missing values are reported as ``None``. When ``keys`` is omitted the union
    of both maps is compared in first-seen order.
    """
    before = before or {}
    after = after or {}
    if keys is None:
        keys = list(dict.fromkeys([*before.keys(), *after.keys()]))
    changes: list[dict[str, object]] = []
    for key in keys:
        from_value = before.get(key)
        to_value = after.get(key)
        if from_value != to_value:
            changes.append({"key": key, "from": from_value, "to": to_value})
    return changes


async def record_audit(
    session: AsyncSession,
    *,
    scope: str,
    target_id: str | UUID,
    actor_id: UUID,
    action: str,
    changes: Sequence[Mapping[str, object]] = (),
    actor_email: str | None = None,
    organization_id: UUID | None = None,
    note: str | None = None,
    commit: bool = True,
) -> AuditEntry:
    """Create an append-only audit log entry."""
    if scope not in AUDIT_SCOPES:
        raise ValueError(f"Unknown audit scope: {scope!r}")
    change_list = [dict(change) for change in changes]
    entry = AuditEntry(
        scope=scope,
        target_id=str(target_id),
        organization_id=organization_id,
        actor_id=actor_id,
        actor_email=actor_email.strip().lower() if actor_email else None,
        action=action,
        changes=change_list,
        keys=[str(change["key"]) for change in change_list if "key" in change],
        note=note,
        created_at=utcnow(),
    )
    session.add(entry)
    if commit:
        try:
            await session.commit()
            await session.refresh(entry)
        except SQLAlchemyError as exc:
            await session.rollback()
            raise PersistenceUnavailableError("Failed to persist audit entry") from exc
        logger.info(
            "audit.recorded",
            extra={"scope": scope, "target_id": str(target_id), "action": action, "keys": entry.keys},
        )
    return entry


async def patch_audited(
    session: AsyncSession,
    obj: ModelT,
    updates: Mapping[str, object],
    *,
    scope: str,
    actor: User,
    action: str,
    changes: Sequence[Mapping[str, object]],
    organization_id: UUID | None = None,
    note: str | None = None,
) -> AuditEntry:
    """Apply ``updates`` and append the audit entry in a single commit."""
    try:
        await crud.patch(session, obj, updates, commit=False)
    except SQLAlchemyError as exc:
        await session.rollback()
        raise PersistenceUnavailableError("Failed to stage update") from exc
    return await record_audit(
        session,
        scope=scope,
        target_id=getattr(obj, "id"),
        actor_id=actor.id,
        actor_email=actor.email,
        organization_id=organization_id,
        action=action,
        changes=changes,
        note=note,
    )


def encode_cursor(entry: AuditEntry) -> str:
    raw = f"{entry.created_at.isoformat()}|{entry.id}"
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii")


def decode_cursor(cursor: str) -> tuple[datetime, UUID]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii")).decode("utf-8")
        created_at_raw, entry_id_raw = raw.split("|", 1)
        return datetime.fromisoformat(created_at_raw), UUID(entry_id_raw)
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidCursorError("Malformed audit cursor") from exc


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def _apply_filter(query: QuerySet[AuditEntry], audit_filter: AuditFilter) -> QuerySet[AuditEntry]:
    if audit_filter.scope is not None:
        query = query.filter(col(AuditEntry.scope) == audit_filter.scope)
    if audit_filter.target_id is not None:
        query = query.filter(col(AuditEntry.target_id) == audit_filter.target_id)
    if audit_filter.actor_id is not None:
        query = query.filter(col(AuditEntry.actor_id) == audit_filter.actor_id)
    if audit_filter.actor_email is not None:
        query = query.filter(col(AuditEntry.actor_email) == audit_filter.actor_email.lower())
    if audit_filter.organization_id is not None:
        query = query.filter(col(AuditEntry.organization_id) == audit_filter.organization_id)
    if audit_filter.action is not None:
        query = query.filter(col(AuditEntry.action) == audit_filter.action)
    if audit_filter.key is not None:
        # JSON list rendered as text: match the quoted key token.
        pattern = f'%"{_escape_like(audit_filter.key)}"%'
        query = query.filter(cast(AuditEntry.keys, String).like(pattern, escape="\\"))
    if audit_filter.created_from is not None:
        query = query.filter(col(AuditEntry.created_at) >= audit_filter.created_from)
    if audit_filter.created_to is not None:
        query = query.filter(col(AuditEntry.created_at) <= audit_filter.created_to)
    return query


async def query_audit(
    session: AsyncSession,
    audit_filter: AuditFilter | None = None,
    *,
    cursor: str | None = None,
    limit: int = 25,
) -> AuditPage:
    """Return one page of matching entries, newest first."""
    audit_filter = audit_filter or AuditFilter()
    query = _apply_filter(AuditEntry.objects.all(), audit_filter)
    if cursor:
        cursor_created_at, cursor_id = decode_cursor(cursor)
        query = query.filter(
            or_(
                col(AuditEntry.created_at) < cursor_created_at,
                (col(AuditEntry.created_at) == cursor_created_at)
                & (col(AuditEntry.id) < cursor_id),
            )
        )
    page_size = max(1, limit)
    rows = await query.order_by(
        col(AuditEntry.created_at).desc(),
        col(AuditEntry.id).desc(),
    ).limit(page_size + 1).all(session)
    entries = rows[:page_size]
    next_cursor = encode_cursor(entries[-1]) if len(rows) > page_size else None
    return AuditPage(entries=entries, next_cursor=next_cursor)


async def iter_audit(
    session: AsyncSession,
    audit_filter: AuditFilter | None = None,
    *,
    page_size: int = 100,
) -> AsyncIterator[AuditEntry]:
    """Lazily walk every matching entry across pages."""
    cursor: str | None = None
    while True:
        page = await query_audit(session, audit_filter, cursor=cursor, limit=page_size)
        for entry in page.entries:
            yield entry
        if page.next_cursor is None:
            return
        cursor = page.next_cursor


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def export_audit_csv(entries: Iterable[AuditEntry]) -> str:
    """Flatten entries to CSV text with one row per field change."""
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_COLUMNS)
    for entry in entries:
        base = [
            str(entry.id),
            entry.created_at.isoformat(),
            entry.actor_email or "",
            entry.scope,
            entry.target_id,
            entry.action,
        ]
        changes = entry.changes or [{}]
        for change in changes:
            writer.writerow(
                [
                    *base,
                    _csv_value(change.get("key")),
                    _csv_value(change.get("from")),
                    _csv_value(change.get("to")),
                    entry.note or "",
                ]
            )
    return buffer.getvalue()
