"""Database initialization and session management."""

import logging
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from credvault_server.core.config import settings

logger = logging.getLogger(__name__)


def create_engine(url: str | None = None) -> AsyncEngine:
    """Create the async database engine.

    Args:
        url: Database URL (defaults to DATABASE_URL)

    Returns:
        Async SQLAlchemy engine
    """
    url = url or settings.database_url
    kwargs: dict[str, Any] = {"echo": False}
    if not url.startswith("sqlite"):
        kwargs.update(
            pool_size=10,
            max_overflow=20,
            pool_recycle=300,  # Recycle connections every 5 minutes
        )
    return create_async_engine(url, **kwargs)


# Global engine and session maker
engine = create_engine()
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_database(db_engine: AsyncEngine | None = None) -> None:
    """Verify database is ready and migrations have been applied.

    Checks that the database is accessible and the alembic_version table exists,
    indicating migrations have been run. Does NOT create tables - use Alembic
    migrations for schema management.
    """
    db_engine = db_engine or engine
    async with db_engine.connect() as conn:
        has_migrations = await conn.run_sync(
            lambda sync_conn: inspect(sync_conn).has_table("alembic_version")
        )

        if not has_migrations:
            logger.warning(
                "Database migrations have not been applied. "
                "Run 'alembic upgrade head' to initialize the database schema."
            )
        else:
            logger.info("Database initialized")


async def close_database(db_engine: AsyncEngine | None = None) -> None:
    """Close database connection pool."""
    await (db_engine or engine).dispose()
