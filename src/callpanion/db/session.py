"""Database Session Management for CallPanion.

Provides:
- Async SQLAlchemy engine creation (SQLite for development, PostgreSQL in production)
- AsyncSession factory with dependency injection
- Table creation at startup
- Transaction context manager for background work
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from callpanion.config import get_settings
from callpanion.db.base import Base


# Global engine and session factory (initialized lazily)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None

# Seconds a SQLite writer waits on a locked database; pairing claims and
# session transitions race on single-row UPDATEs
SQLITE_BUSY_TIMEOUT = 15


def _engine_options(url: str) -> dict[str, Any]:
    """Driver-specific engine options for a database URL.

    - SQLite in memory: one shared connection (StaticPool)
    - SQLite on disk: parent directory created, busy timeout raised
    - Others: pool_size=5, max_overflow=10, pool_recycle=1800
    """
    if not url.startswith("sqlite"):
        return {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_timeout": 30,
            "pool_recycle": 1800,
            "pool_pre_ping": True,
        }

    connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
    db_path = url.split("///", 1)[1] if "///" in url else ":memory:"

    if db_path in ("", ":memory:"):
        return {"connect_args": connect_args, "poolclass": StaticPool}

    Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    return {"connect_args": connect_args, "pool_pre_ping": True}


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine

    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.database.url,
            echo=settings.database.echo,
            **_engine_options(settings.database.url),
        )

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _session_factory

    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())

    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for database sessions.

    Yields:
        AsyncSession that is committed on success and rolled back on error.
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Session context outside of FastAPI (reconciliation passes, health checks).

    Usage:
        async with get_db_context() as db:
            await db.execute(text("SELECT 1"))
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    """Create all tables. Safe to call multiple times."""
    import callpanion.db.models  # noqa: F401  registers tables

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose the engine and forget the session factory."""
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory bound to the given engine.

    Objects stay usable after commit; services re-read rows explicitly
    (``populate_existing``) where freshness matters.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Testing utilities
async def create_test_engine(url: str = "sqlite+aiosqlite:///:memory:") -> AsyncEngine:
    """Create an engine with all tables, in memory unless a URL is given."""
    import callpanion.db.models  # noqa: F401

    engine = create_async_engine(url, echo=False, **_engine_options(url))

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return engine


def get_test_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory for an engine from create_test_engine()."""
    return create_session_factory(engine)
