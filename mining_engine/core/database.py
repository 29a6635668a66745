"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import AsyncIterator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import settings, DatabaseConfig
from .exceptions import TransientStoreError
from .logging import get_logger

logger = get_logger(__name__)

# Process-wide engine and session maker, created by init_database()
async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


def create_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every store and service is constructed with."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_database(database_url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    """Initialize database connections and return the session maker."""
    global async_engine, async_session_maker

    logger.info("Initializing database connections")

    async_engine = create_async_engine(
        DatabaseConfig.get_database_url(database_url, async_driver=True),
        **DatabaseConfig.get_engine_config(database_url),
        echo=settings.debug
    )
    async_session_maker = create_session_maker(async_engine)

    logger.info("Database connections initialized")
    return async_session_maker


async def close_database() -> None:
    """Close database connections."""
    global async_engine, async_session_maker

    logger.info("Closing database connections")

    if async_engine:
        await async_engine.dispose()
    async_engine = None
    async_session_maker = None

    logger.info("Database connections closed")


@asynccontextmanager
async def transaction_scope(
    session_maker: async_sessionmaker[AsyncSession],
    session: Optional[AsyncSession] = None,
) -> AsyncIterator[AsyncSession]:
    """
    Yield a session inside a transaction.

    When ``session`` is given the work joins the caller's transaction and the
    caller owns commit/rollback; otherwise a fresh session is opened and the
    transaction commits on exit or rolls back on error.
    """
    if session is not None:
        yield session
        return

    async with session_maker() as own_session:
        async with own_session.begin():
            yield own_session


@asynccontextmanager
async def translate_store_errors(operation: str) -> AsyncIterator[None]:
    """Re-raise driver-level connectivity failures as TransientStoreError."""
    try:
        yield
    except (OperationalError, PoolTimeoutError) as e:
        logger.warning("Store temporarily unavailable", operation=operation, error=str(e))
        raise TransientStoreError(
            f"Store unavailable during {operation}",
            {"operation": operation, "error": str(e)}
        ) from e
    except DBAPIError as e:
        if e.connection_invalidated:
            raise TransientStoreError(
                f"Connection lost during {operation}",
                {"operation": operation, "error": str(e)}
            ) from e
        raise


class DatabaseManager:
    """Database manager for administrative operations."""

    @staticmethod
    async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
        """Create all tables in the database."""
        from mining_engine.models.base import Base

        engine = engine or async_engine
        if not engine:
            raise RuntimeError("Database not initialized")

        logger.info("Creating database tables")
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    @staticmethod
    async def health_check(session_maker: Optional[async_sessionmaker[AsyncSession]] = None) -> bool:
        """Check database connectivity."""
        session_maker = session_maker or async_session_maker
        if not session_maker:
            return False
        try:
            async with session_maker() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
