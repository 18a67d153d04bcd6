"""Database connection and session management for marketetl.

Provides async SQLAlchemy engine/session management with connection pooling.
Bulk loading borrows raw driver connections from the same pool.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Iterable
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from marketetl.config import get_config
from marketetl.db.models import Base, raw_table, transformed_table

if TYPE_CHECKING:
    from marketetl.pipeline.assets import AssetDescriptor

# Global engine instance
_engine: AsyncEngine | None = None
_session_factory: sessionmaker | None = None


def get_engine() -> AsyncEngine:
    """Get or create singleton async engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine

    Raises:
        KeyError: If database URL is not configured
    """
    global _engine

    if _engine is None:
        config = get_config()
        db_config = config.db

        # Build engine kwargs
        engine_kwargs = {"echo": db_config.echo}

        # SQLite doesn't support connection pooling parameters
        if "sqlite" not in db_config.url.lower():
            engine_kwargs.update({
                "pool_size": db_config.pool_size,
                "max_overflow": db_config.pool_max_overflow,
                "pool_timeout": db_config.pool_timeout,
                "pool_pre_ping": True,  # Verify connections before using
                "pool_recycle": 3600,  # Recycle connections after 1 hour
            })

        _engine = create_async_engine(db_config.url, **engine_kwargs)

    return _engine


def get_session_factory() -> sessionmaker:
    """Get or create session factory.

    Returns:
        sessionmaker: Session factory for creating AsyncSession instances
    """
    global _session_factory

    if _session_factory is None:
        engine = get_engine()
        _session_factory = sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Don't expire objects after commit
        )

    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Get async database session (context manager).

    Usage:
        async with get_session() as session:
            result = await session.execute(query)

    Yields:
        AsyncSession: SQLAlchemy async session
    """
    session_factory = get_session_factory()
    session = session_factory()

    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


def is_postgres(engine: AsyncEngine) -> bool:
    """True when the engine talks to PostgreSQL (server-side COPY available)."""
    return engine.dialect.name == "postgresql"


async def init_db(
    engine: AsyncEngine | None = None,
    assets: Iterable[AssetDescriptor] = (),
    drop: bool = False,
) -> None:
    """Create all tables, including per-asset raw/transformed variants.

    Note: For production, prefer managed migrations.
    This is a convenience function for development/testing.
    """
    engine = engine or get_engine()

    # Register per-asset table copies before create_all
    for asset in assets:
        raw_table(asset.raw_table)
        transformed_table(asset.transformed_table)

    async with engine.begin() as conn:
        if drop:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database engine and dispose connections.

    Call this on application shutdown.
    """
    global _engine, _session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
