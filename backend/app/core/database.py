"""
Database layer — async SQL via SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Engine and session factory construction
    • Base model for ORM entities
    • Table creation for the application lifespan

Usage:
    from backend.app.core.database import create_engine_for_url, create_session_factory

    engine = create_engine_for_url(settings.DATABASE_URL)
    factory = create_session_factory(engine)
    async with factory() as session:
        ...
"""

from __future__ import annotations

import logging
from typing import Any, Dict

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


def create_engine_for_url(
    url: str,
    *,
    echo: bool = False,
    pool_size: int = 10,
    max_overflow: int = 10,
) -> AsyncEngine:
    """Build an async engine; pool sizing only applies to server databases."""
    kwargs: Dict[str, Any] = {"echo": echo}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = pool_size
        kwargs["max_overflow"] = max_overflow
        kwargs["pool_pre_ping"] = True
    return create_async_engine(url, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    # Registers the ORM tables on Base.metadata
    from backend.app.reports import orm  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")
