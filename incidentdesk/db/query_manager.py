"""Small query-builder layer exposed as ``Model.objects`` on table models."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from sqlmodel import col, select

if TYPE_CHECKING:
    from sqlalchemy.sql.elements import ColumnElement
    from sqlmodel.ext.asyncio.session import AsyncSession
    from sqlmodel.sql.expression import SelectOfScalar

ModelT = TypeVar("ModelT")


@dataclass(frozen=True)
class QuerySet(Generic[ModelT]):
    """Immutable, chainable wrapper around a SQLModel select statement."""

    statement: SelectOfScalar[ModelT]

    def filter(self, *criteria: ColumnElement[bool] | bool) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.where(*criteria))

    def filter_by(self, **kwargs: object) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.filter_by(**kwargs))

    def order_by(self, *ordering: Any) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.order_by(*ordering))

    def limit(self, value: int) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.limit(value))

    def offset(self, value: int) -> QuerySet[ModelT]:
        return replace(self, statement=self.statement.offset(value))

    async def all(self, session: AsyncSession) -> list[ModelT]:
        return list(await session.exec(self.statement))

    async def first(self, session: AsyncSession) -> ModelT | None:
        return (await session.exec(self.statement)).first()


class ModelManager(Generic[ModelT]):
    """Entry point for building querysets against a single model."""

    def __init__(self, model: type[ModelT]) -> None:
        self.model = model

    def _queryset(self) -> QuerySet[ModelT]:
        return QuerySet(select(self.model))

    def all(self) -> QuerySet[ModelT]:
        return self._queryset()

    def by_id(self, obj_id: object) -> QuerySet[ModelT]:
        return self.by_field("id", obj_id)

    def by_field(self, field_name: str, value: object) -> QuerySet[ModelT]:
        return self._queryset().filter(col(getattr(self.model, field_name)) == value)

    def filter_by(self, **kwargs: object) -> QuerySet[ModelT]:
        return self._queryset().filter_by(**kwargs)

    def filter(self, *criteria: ColumnElement[bool] | bool) -> QuerySet[ModelT]:
        return self._queryset().filter(*criteria)


class ManagerDescriptor:
    """Class-level descriptor returning a fresh manager for the owning model."""

    def __get__(self, instance: object, owner: type[ModelT]) -> ModelManager[ModelT]:
        return ModelManager(owner)
