"""Base model class wiring the ``objects`` query manager onto tables."""

from __future__ import annotations

from typing import ClassVar

from sqlmodel import SQLModel

from incidentdesk.db.query_manager import ManagerDescriptor


class QueryModel(SQLModel, table=False):
    """SQLModel base exposing ``Model.objects`` for chainable queries."""

    objects: ClassVar[ManagerDescriptor] = ManagerDescriptor()
