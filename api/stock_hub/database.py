# stock_hub/database.py
"""
Database connection for Stock Hub.

SQLAlchemy 2.0 async: asyncpg against PostgreSQL by default, aiosqlite when
DATABASE_URL points at a SQLite file (local runs, tests).

Sessions commit when the request or task finishes cleanly and roll back on
any exception; services only ever flush.
"""
from __future__ import annotations
from typing import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text

from stock_hub.settings import settings

# ============================================================================
# Base class for all ORM models
# ============================================================================

class Base(DeclarativeBase):
    pass


# ============================================================================
# Engine and Session Factory
# ============================================================================

_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_database_url() -> str:
    """DATABASE_URL wins; otherwise PostgreSQL from the DB_* settings."""
    if settings.DATABASE_URL:
        return settings.DATABASE_URL
    return (
        f"postgresql+asyncpg://"
        f"{settings.DB_USER}:{settings.DB_PASSWORD}@"
        f"{settings.DB_HOST}:{settings.DB_PORT}/{settings.DB_NAME}"
    )


def configure_engine(engine: AsyncEngine) -> None:
    """Bind the session factory to an existing engine (tests, scripts)."""
    global _engine, _async_session_factory
    _engine = engine
    _async_session_factory = async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db() -> None:
    if _engine is not None:
        return

    url = get_database_url()
    kwargs = {"echo": settings.DB_ECHO, "pool_pre_ping": True}
    # SQLite uses a single-connection pool without size options
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=settings.DB_POOL_SIZE, max_overflow=settings.DB_MAX_OVERFLOW)

    configure_engine(create_async_engine(url, **kwargs))

    if settings.DB_CREATE_ALL:
        await create_all()


async def create_all() -> None:
    """Create missing tables (no migrations yet)."""
    import stock_hub.db_models  # noqa: F401  registers tables on Base.metadata

    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


@asynccontextmanager
async def get_session_context() -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work outside a request (fetch tasks, scheduler, tests).

    Usage:
        async with get_session_context() as db:
            await FetchHistoryService(db).purge_expired()
    """
    if _async_session_factory is None:
        await init_db()

    async with _async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request, committed after the handler returns."""
    async with get_session_context() as session:
        yield session


# ============================================================================
# Health Check
# ============================================================================

async def check_db_health() -> dict:
    """Connectivity probe for /health; reports the failure instead of raising."""
    try:
        async with get_session_context() as db:
            await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
