"""
PostgreSQL database connection and session management.

Uses SQLAlchemy 2.0 async patterns. The URL comes from DATABASE_URL when set
(tests point it at sqlite+aiosqlite), otherwise from the POSTGRES_* settings.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from leadlink.core.config import settings


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


def _pool_options(url: str) -> dict:
    # SQLite drivers do not accept queue pool sizing
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10}


# Create async engine
engine = create_async_engine(
    settings.sqlalchemy_url,
    echo=settings.debug,
    **_pool_options(settings.sqlalchemy_url),
)

# Create session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


def make_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for an arbitrary engine (used by tests and tooling)."""
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def init_db(bind: AsyncEngine = engine) -> None:
    """Initialize the database (create tables)."""
    # Models must be imported so their tables are registered on Base.metadata
    import leadlink.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db(bind: AsyncEngine = engine) -> None:
    """Close database connections."""
    await bind.dispose()

