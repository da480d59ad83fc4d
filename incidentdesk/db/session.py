"""Async engine, request sessions, and schema bootstrap for IncidentDesk."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING

from alembic import command
from alembic.config import Config
from alembic.script import ScriptDirectory
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from incidentdesk import models
from incidentdesk.core.config import settings
from incidentdesk.core.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

logger = get_logger(__name__)

PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Table metadata must be registered before create_all or autogenerate runs.
REGISTERED_TABLES = tuple(sorted(models.__all__))

_DRIVER_ALIASES = {
    "postgres": "postgresql+psycopg",
    "postgresql": "postgresql+psycopg",
    "sqlite": "sqlite+aiosqlite",
}


def _normalize_database_url(database_url: str) -> str:
    """Pin the async driver for bare ``postgresql://`` or ``sqlite://`` URLs."""
    scheme, sep, rest = database_url.partition("://")
    if not sep:
        return database_url
    return f"{_DRIVER_ALIASES.get(scheme, scheme)}://{rest}"


async_engine: AsyncEngine = create_async_engine(
    _normalize_database_url(settings.database_url),
    pool_pre_ping=True,
)
async_session_maker = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def _alembic_config() -> Config:
    config = Config(str(PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(PROJECT_ROOT / "migrations"))
    config.attributes["configure_logger"] = False
    return config


def _has_revisions(config: Config) -> bool:
    return bool(ScriptDirectory.from_config(config).get_heads())


def run_migrations() -> None:
    """Upgrade the incident schema to the latest Alembic head."""
    logger.info("db.migrations.started")
    command.upgrade(_alembic_config(), "head")
    logger.info("db.migrations.complete")


async def init_db() -> None:
    """Create or migrate the incident, audit, and principal tables."""
    if settings.db_auto_migrate and _has_revisions(_alembic_config()):
        logger.info("db.init.migrate")
        await asyncio.to_thread(run_migrations)
        return
    if settings.db_auto_migrate:
        logger.warning("db.init.no_revisions", extra={"fallback": "create_all"})

    logger.info("db.init.create_all", extra={"tables": list(REGISTERED_TABLES)})
    async with async_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a request session; an open transaction left by a failed request is rolled back."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            if session.in_transaction():
                try:
                    await session.rollback()
                except SQLAlchemyError:
                    logger.exception("db.session.rollback_failed")
