"""
Database Session Management - Async SQLAlchemy session factory.

Provides separate read and write database connections and the
transaction boundary every ledger write runs inside.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from structlog import get_logger

from app.config import settings
from app.db.errors import translate_db_error
from app.exceptions import LedgerError

logger = get_logger(__name__)


# Global engine instances
_write_engine: AsyncEngine | None = None
_read_engine: AsyncEngine | None = None

# Session factories
_write_session_factory: async_sessionmaker[AsyncSession] | None = None
_read_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_write_engine() -> AsyncEngine:
    """Get or create the write database engine (primary)."""
    global _write_engine
    if _write_engine is None:
        _write_engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            echo=settings.log_level == "DEBUG",
        )
    return _write_engine


def get_read_engine() -> AsyncEngine:
    """Get or create the read database engine (replica)."""
    global _read_engine
    if _read_engine is None:
        _read_engine = create_async_engine(
            settings.read_database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_timeout=settings.database_pool_timeout,
            pool_recycle=settings.database_pool_recycle,
            echo=settings.log_level == "DEBUG",
        )
    return _read_engine


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the write session factory."""
    global _write_session_factory
    if _write_session_factory is None:
        engine = get_write_engine()
        _write_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _write_session_factory


def get_read_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the read session factory."""
    global _read_session_factory
    if _read_session_factory is None:
        engine = get_read_engine()
        _read_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
    return _read_session_factory


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for write database session.

    Usage:
        @app.post("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    factory = get_write_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for read database session.

    Usage:
        @app.get("/endpoint")
        async def endpoint(db: AsyncSession = Depends(get_read_db)):
            ...
    """
    factory = get_read_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def unit_of_work(session: AsyncSession, resource: str) -> AsyncIterator[AsyncSession]:
    """
    Run a block of writes as one transaction on the given session.

    Commits on success. On any failure the transaction is rolled back, so no
    partial write is ever observable; store errors are translated into the
    ledger taxonomy (see app.db.errors).

    Usage:
        async with unit_of_work(session, "token_balance") as tx:
            await tx.execute(...)
    """
    try:
        yield session
        await session.commit()
    except LedgerError:
        await _rollback(session, resource)
        raise
    except (SQLAlchemyError, OSError) as exc:
        await _rollback(session, resource)
        translated = translate_db_error(exc, resource)
        if translated is None:
            raise
        raise translated from exc


async def _rollback(session: AsyncSession, resource: str) -> None:
    try:
        await session.rollback()
    except (SQLAlchemyError, OSError) as exc:
        logger.error("rollback_failed", resource=resource, error=str(exc))


async def close_engines() -> None:
    """Close all database engines (for graceful shutdown)."""
    global _write_engine, _read_engine

    if _write_engine:
        await _write_engine.dispose()
        _write_engine = None

    if _read_engine:
        await _read_engine.dispose()
        _read_engine = None
