"""Limit/offset pagination over SQLModel select statements."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import TYPE_CHECKING, Any, TypeVar, cast

from fastapi_pagination.ext.sqlalchemy import paginate as _paginate

if TYPE_CHECKING:
    from fastapi_pagination.bases import AbstractPage
    from sqlalchemy.sql.selectable import Select
    from sqlmodel.ext.asyncio.session import AsyncSession

T = TypeVar("T")

Transformer = Callable[[Sequence[Any]], Sequence[Any] | Awaitable[Sequence[Any]]]


async def paginate(
    session: AsyncSession,
    statement: Select[Any],
    *,
    transformer: Transformer | None = None,
) -> AbstractPage[T]:
    """Run ``statement`` through the request's pagination params."""
    if transformer is None:
        return cast("AbstractPage[T]", await _paginate(session, statement))
    return cast(
        "AbstractPage[T]",
        await _paginate(session, statement, transformer=transformer),
    )
