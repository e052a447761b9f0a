"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ecotrack.db.base import Base
from ecotrack.db.models import Community, User
from ecotrack.progression.activity import ActivityFeedEmitter
from factories import FakeRedis, make_community, make_user


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite so separate sessions see each other's commits."""
    eng = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'progression.db'}",
        connect_args={"timeout": 30},
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def emitter(session_factory) -> ActivityFeedEmitter:
    return ActivityFeedEmitter(session_factory, max_attempts=3, retry_delay=0)


@pytest_asyncio.fixture
async def community(db_session: AsyncSession) -> Community:
    return await make_community(db_session)


@pytest_asyncio.fixture
async def member(db_session: AsyncSession, community: Community) -> User:
    return await make_user(db_session, community)


@pytest_asyncio.fixture
async def loner(db_session: AsyncSession) -> User:
    """A user outside any community."""
    return await make_user(db_session, name="Sam")
