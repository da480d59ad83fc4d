"""Generic persistence helpers shared by services and API routes."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import SQLModel, col, select

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession

ModelT = TypeVar("ModelT", bound=SQLModel)


async def get_or_create(
    session: AsyncSession,
    model: type[ModelT],
    *,
    defaults: Mapping[str, object] | None = None,
    **lookup: object,
) -> tuple[ModelT, bool]:
    """Fetch a row matching ``lookup`` or insert one with ``defaults``."""
    statement = select(model)
    for key, value in lookup.items():
        statement = statement.where(col(getattr(model, key)) == value)
    existing = (await session.exec(statement)).first()
    if existing is not None:
        return existing, False

    values: dict[str, Any] = {**(defaults or {}), **lookup}
    obj = model(**values)
    session.add(obj)
    try:
        await session.commit()
    except IntegrityError:
        # Lost a concurrent insert race; return the winner.
        await session.rollback()
        winner = (await session.exec(statement)).first()
        if winner is None:
            raise
        return winner, False
    await session.refresh(obj)
    return obj, True


async def patch(
    session: AsyncSession,
    obj: ModelT,
    updates: Mapping[str, object],
    *,
    commit: bool = True,
) -> ModelT:
    """Apply attribute updates to a loaded row and persist it."""
    for key, value in updates.items():
        setattr(obj, key, value)
    session.add(obj)
    if commit:
        await session.commit()
        await session.refresh(obj)
    return obj


async def update_where(
    session: AsyncSession,
    model: type[ModelT],
    *criteria: ColumnElement[bool] | bool,
    commit: bool = True,
    **values: object,
) -> int:
    """Issue a bulk UPDATE and return the number of matched rows."""
    statement = (
        update(model)
        .where(*criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await session.exec(statement)  # type: ignore[call-overload]
    if commit:
        await session.commit()
    return int(result.rowcount or 0)
