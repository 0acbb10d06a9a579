"""
Database connection management.
Handles async SQLAlchemy engine and session factory creation.
"""

import logging

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from jobqueue.config import Settings, get_settings
from jobqueue.db.models import Base

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine(
    database_url: str | None = None,
    settings: Settings | None = None,
) -> AsyncEngine:
    """
    Create the async database engine.

    PostgreSQL (asyncpg) gets a connection pool sized from settings.
    SQLite (aiosqlite) gets one connection per session and a generous
    busy timeout so concurrent writers queue up instead of failing.

    Args:
        database_url: Overrides the configured database URL.
        settings: Settings to read pool sizes from.

    Returns:
        AsyncEngine: The SQLAlchemy async engine instance.
    """
    settings = settings or get_settings()
    url = make_url(database_url or settings.database_url)

    if url.get_backend_name() == "sqlite":
        return create_async_engine(
            url,
            poolclass=NullPool,
            connect_args={"timeout": 30},
            echo=False,
        )

    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        echo=settings.log_level == "DEBUG",
        pool_pre_ping=True,
    )


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """
    Create the session factory used by the job store.

    Objects stay usable after commit so the store can hand detached job
    records back to callers.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine) -> None:
    """
    Create any missing tables.

    Production deployments run the alembic migrations instead; this keeps
    SQLite and development setups self-contained.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database schema initialized")


async def close_db(engine: AsyncEngine) -> None:
    """
    Close the database connection.
    Should be called on application shutdown.
    """
    await engine.dispose()
    logger.info("Database connection closed")
