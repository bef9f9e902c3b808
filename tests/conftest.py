"""Shared test fixtures."""

from collections.abc import AsyncIterator
from datetime import UTC, datetime

import pytest
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from credvault_server.core.clock import FrozenClock
from credvault_server.core.encryption import EncryptionService
from credvault_server.core.password import hash_password
from credvault_server.models.base import Base
from credvault_server.models.user import User
from tests.fixtures import TEST_ENCRYPTION_SECRET, TEST_PASSWORD


def _enable_foreign_keys(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


@pytest.fixture
async def async_engine():
    """Create async SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    _enable_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncIterator[AsyncSession]:
    """Create async session for testing."""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )

    async with async_session_maker() as session:
        yield session


@pytest.fixture
async def file_session_maker(tmp_path) -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Sessions on a file-backed database, each with its own connection.

    Unlike the in-memory engine, sessions from this maker can run statements
    concurrently, so it is used to exercise races between requests.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'credvault.db'}",
        connect_args={"timeout": 30},  # Writers wait on each other rather than fail
    )
    _enable_foreign_keys(engine)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def shared_user(file_session_maker: async_sessionmaker[AsyncSession]) -> User:
    """Active user stored in the file-backed database."""
    async with file_session_maker() as session:
        user = User(
            id="shared-user-uuid", email="grace@example.com", name="Grace", is_active=True
        )
        session.add(user)
        await session.commit()
    return user


@pytest.fixture
def clock() -> FrozenClock:
    """Clock fixed at a known instant; advance it to move time."""
    return FrozenClock(datetime(2026, 3, 1, 12, 0, tzinfo=UTC))


@pytest.fixture
def encryption() -> EncryptionService:
    return EncryptionService(TEST_ENCRYPTION_SECRET)


@pytest.fixture
async def test_user(async_session: AsyncSession) -> User:
    """Create an active user with TEST_PASSWORD."""
    user = User(
        id="test-user-uuid-1",
        email="ada@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        name="Ada",
        is_active=True,
    )
    async_session.add(user)
    await async_session.commit()
    await async_session.refresh(user)
    return user


@pytest.fixture
async def test_user_2(async_session: AsyncSession) -> User:
    """Create a second user."""
    user = User(
        id="test-user-uuid-2",
        email="grace@example.com",
        password_hash=hash_password(TEST_PASSWORD),
        is_active=True,
    )
    async_session.add(user)
    await async_session.commit()
    await async_session.refresh(user)
    return user
