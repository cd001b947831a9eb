"""
Test configuration and fixtures.
Uses SQLite in-memory for fast tests. Mocks Redis and every platform API.
"""
import pytest
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, patch
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.ext.compiler import compiles
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.pool import StaticPool
from recapflow.database import Base
import recapflow.models  # noqa: F401  (registers every table on Base.metadata)


# Register JSONB as JSON for SQLite compatibility in tests
@compiles(JSONB, "sqlite")
def _compile_jsonb_sqlite(type_, compiler, **kw):
    return "JSON"


SAMPLE_VTT = (
    "WEBVTT\n\n"
    "1\n00:00:00.000 --> 00:00:02.000\nAlice: Hello everyone\n\n"
    "2\n00:00:02.000 --> 00:00:05.000\nAlice: let's get started\n\n"
    "3\n00:00:05.500 --> 00:00:08.000\nBob: Sounds good"
)


class FakeRedis:
    """Minimal in-memory stand-in for the redis.asyncio commands the pipeline uses."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.lists: dict[str, list] = {}

    async def set(self, key, value, nx=False, ex=None):
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def setex(self, key, ttl, value):
        self.store[key] = value
        return True

    async def get(self, key):
        return self.store.get(key)

    async def exists(self, key):
        return 1 if key in self.store else 0

    async def delete(self, key):
        return 1 if self.store.pop(key, None) is not None else 0

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def ping(self):
        return True


@pytest.fixture
async def db():
    """In-memory SQLite database for tests."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with session_factory() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def session_factory(db):
    """Stand-in for async_session_factory that hands workers the test session."""
    @asynccontextmanager
    async def _factory():
        yield db
    return _factory


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def mock_redis(fake_redis):
    """Patch the shared Redis factory with an in-memory fake."""
    with patch("recapflow.utils.redis_client.get_redis", new=AsyncMock(return_value=fake_redis)):
        yield fake_redis


@pytest.fixture
def sample_vtt():
    return SAMPLE_VTT
