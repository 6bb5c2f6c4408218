"""Database session management and connection handling."""

import os
import logging
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    create_async_engine as sa_create_async_engine,
    AsyncSession,
    async_sessionmaker,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from . import models

logger = logging.getLogger(__name__)


def get_database_url() -> str:
    """
    Get database URL from environment variable.
    Supports both sync and async URLs.
    """
    db_url = os.getenv("DATABASE_URL")
    if db_url:
        # Convert postgresql:// to postgresql+asyncpg://
        if db_url.startswith("postgresql://"):
            db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        # Convert postgres:// to postgresql+asyncpg://
        elif db_url.startswith("postgres://"):
            db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)
        return db_url
    # Default to SQLite for local development/testing
    return "sqlite+aiosqlite:///./clinic_payments.db"


def create_async_engine(
    database_url: Optional[str] = None,
    echo: bool = False,
    pool_size: int = 5,
    max_overflow: int = 10,
) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    Args:
        database_url: Database connection URL. If None, uses get_database_url().
        echo: If True, log all SQL statements.
        pool_size: Number of connections to keep in the pool.
        max_overflow: Maximum overflow connections beyond pool_size.

    Returns:
        AsyncEngine instance.
    """
    url = database_url or get_database_url()

    if "sqlite" in url:
        # An in-memory database only exists on its one connection
        if ":memory:" in url:
            return sa_create_async_engine(
                url,
                echo=echo,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return sa_create_async_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},
        )

    return sa_create_async_engine(
        url,
        echo=echo,
        pool_size=pool_size,
        max_overflow=max_overflow,
    )


def get_async_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Create an async session factory bound to an engine.

    Args:
        engine: Engine the sessions will use.

    Returns:
        async_sessionmaker instance.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional scope around a series of operations.

    Commits on success, rolls back on any exception.

    Example:
        async with session_scope(factory) as db:
            appointment = await db.get(Appointment, appointment_id)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


class DatabaseManager:
    """
    Database manager class for explicit lifecycle control.

    Example:
        db_manager = DatabaseManager()
        await db_manager.initialize()

        async with db_manager.session() as session:
            # use session
            pass

        await db_manager.shutdown()
    """

    def __init__(
        self,
        database_url: Optional[str] = None,
        echo: bool = False,
        pool_size: int = 5,
        max_overflow: int = 10,
    ):
        self.database_url = database_url
        self.echo = echo
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError(
                "DatabaseManager not initialized. Call initialize() first."
            )
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            raise RuntimeError(
                "DatabaseManager not initialized. Call initialize() first."
            )
        return self._session_factory

    async def initialize(self, create_tables: bool = True) -> None:
        """Initialize the database connection."""
        logger.info("Initializing database connection...")
        self._engine = create_async_engine(
            self.database_url,
            self.echo,
            self.pool_size,
            self.max_overflow,
        )
        self._session_factory = get_async_session_factory(self._engine)

        if create_tables:
            async with self._engine.begin() as conn:
                await conn.run_sync(models.Base.metadata.create_all)
                logger.info("Database tables created successfully.")

        logger.info("Database initialized successfully.")

    async def shutdown(self) -> None:
        """Shutdown the database connection."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connection closed.")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with session_scope(self.session_factory) as session:
            yield session
