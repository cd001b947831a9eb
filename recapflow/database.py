"""
Async SQLAlchemy engine, sessions and dialect helpers.

The engine is created on first use so importing models never opens a pool.
Sessions use expire_on_commit=False: workers keep reading job and meeting
attributes after committing, and async sessions cannot lazy-load.

Every upsert in the pipeline (meetings, transcripts, jobs, dead letters) is a
single INSERT ... ON CONFLICT statement. dialect_insert() picks the construct
for the bound dialect: PostgreSQL in production, SQLite under test.
"""
import logging
from typing import AsyncGenerator, Optional
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)

_engine: Optional[AsyncEngine] = None
_session_maker: Optional[async_sessionmaker] = None


class Base(DeclarativeBase):
    pass


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        from recapflow.config import get_settings
        settings = get_settings()
        _engine = create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            # Workers hold connections across long idle polls
            pool_pre_ping=True,
            echo=settings.database_echo,
        )
        logger.info("Database engine created (pool_size=%d)", settings.database_pool_size)
    return _engine


def _get_session_maker() -> async_sessionmaker:
    global _session_maker
    if _session_maker is None:
        _session_maker = async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)
    return _session_maker


def async_session_factory() -> AsyncSession:
    """Session for background workers, used as `async with async_session_factory() as db`."""
    return _get_session_maker()()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency. Commits when the endpoint returns, rolls back if it raises.
    The event router commits per event itself; this commit covers the operator API.
    """
    async with _get_session_maker()() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            logger.debug("Request session rolled back: %s", str(e))
            await session.rollback()
            raise


def dialect_insert(db: AsyncSession):
    """Dialect-specific insert construct supporting ON CONFLICT."""
    if db.get_bind().dialect.name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        from sqlalchemy.dialects.postgresql import insert
    return insert


async def dispose_engine() -> None:
    """Close pooled connections on shutdown."""
    global _engine, _session_maker
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database engine disposed")
    _engine = None
    _session_maker = None
