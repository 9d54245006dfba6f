"""
Async database plumbing for the Trust & Compliance Engine.

Builds the SQLAlchemy AsyncEngine and the session factory every service
receives through its constructor, and creates the schema.

Usage:
    from trust_engine.infra.database import create_engine, create_session_factory, init_models

    engine = create_engine(settings)
    await init_models(engine)
    session_factory = create_session_factory(engine)

    async with session_factory() as session:
        async with session.begin():
            ...
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from trust_engine.lib.config import ComplianceSettings
from trust_engine.models import Base

logger = logging.getLogger(__name__)


def create_engine(settings: ComplianceSettings, echo: bool = False) -> AsyncEngine:
    """
    Create the async engine for ``settings.database_url``.

    SQLite connections get a busy timeout so background jobs and request
    handlers can interleave writes without failing fast.
    """
    url = settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=echo, connect_args={"timeout": 30})
    return create_async_engine(url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema ready (%d tables)", len(Base.metadata.tables))

