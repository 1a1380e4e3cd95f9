"""Shared fixtures: in-memory SQLite database, settings, clock, and API client."""

import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tokenledger.app import create_app
from tokenledger.config import Settings, get_settings
from tokenledger.models import Base, WorkspaceUser


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FixedRng:
    """Stand-in for random.Random that always returns the same reward."""

    def __init__(self, value: int) -> None:
        self.value = value
        self.calls: list[tuple[int, int]] = []

    def randint(self, a: int, b: int) -> int:
        self.calls.append((a, b))
        return self.value


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://")


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine("sqlite+aiosqlite://", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_member(session):
    """Factory inserting a workspace member with a starting balance (no ledger row)."""

    async def _make_member(credit: int = 0, workspace_id: str | None = None) -> WorkspaceUser:
        member = WorkspaceUser(
            workspace_id=workspace_id or str(uuid.uuid4()),
            user_id=str(uuid.uuid4()),
            credit=credit,
        )
        session.add(member)
        await session.commit()
        return member

    return _make_member


@pytest_asyncio.fixture
async def client(session_factory, settings):
    app = create_app()
    app.state.session_factory = session_factory
    app.dependency_overrides[get_settings] = lambda: settings
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
