"""
Database engine and session factories.

Nothing is created at import time: the API lifespan, the worker runner and
the Celery task each build their own engine from Settings, and tests build
one against a temporary SQLite file.

Every repository call opens its own session and commits before returning,
so each pipeline checkpoint is durable before the next stage starts.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from smartdoc.core.config import Settings
from smartdoc.models.documents import Base

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

def build_engine(settings: Settings) -> AsyncEngine:
    url = make_url(settings.database_url)
    kwargs: dict = {"echo": settings.db_echo_sql}

    # Pool sizing is meaningless for SQLite's file/connection model
    if not url.get_backend_name().startswith("sqlite"):
        kwargs.update(
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,     # detect stale connections before use
            pool_recycle=3600,      # recycle connections every hour
        )

    logger.info("Database engine | backend=%s", url.get_backend_name())
    return create_async_engine(url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> SessionFactory:
    # expire_on_commit=False keeps ORM objects usable after commit
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def transaction(sessions: SessionFactory) -> AsyncGenerator[AsyncSession, None]:
    """Open a session and commit on clean exit; roll back on error."""
    async with sessions() as session:
        async with session.begin():
            yield session


# ---------------------------------------------------------------------------
# Schema + health helpers
# ---------------------------------------------------------------------------

async def create_tables(engine: AsyncEngine) -> None:
    """Create all tables. Used in development and tests; production runs migrations."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_db_health(engine: AsyncEngine) -> dict:
    """Ping the database; used by /health/ready."""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        logger.error("DB health check failed: %s", exc)
        return {"status": "error", "detail": str(exc)}
