"""Async SQLAlchemy engine and session factory.

Sessions, bots, webhook events, recordings and usage rows all live in one
Postgres database. Repositories never hold a session between calls: each
operation opens one from ``get_session`` and commits or rolls back before
returning, so compare-and-set updates are never held across vendor calls.

Provides:
- Base: declarative base with a constraint naming convention shared with
  the Alembic migrations
- get_engine(): lazily created engine singleton
- get_session(): AsyncSession generator passed to repositories as session_factory
- init_db() / close_db(): lifespan hooks
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.botsync.config import get_settings

NAMING_CONVENTION = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_pre_ping=True,
            echo=settings.DB_ECHO,
        )
    return _engine


class Base(DeclarativeBase):
    """Declarative base for lifecycle tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the shared engine.

    expire_on_commit is off so rows returned by a repository stay readable
    after its transaction commits.
    """
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


async def init_db() -> None:
    """Create missing lifecycle tables.

    Alembic owns the schema in deployed environments; this keeps local
    databases usable without running migrations first.
    """
    from src.botsync.lifecycle import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None
