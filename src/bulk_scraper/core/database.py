"""Database engines and sessions.

Two engines point at the same PostgreSQL database:

``async_engine`` (asyncpg)
    Serves the read-only API routes through :func:`get_db`.
``sync_engine`` (psycopg2)
    Serves intake and the Celery tasks through :func:`get_sync_session`.
    Intake runs on a threadpool and tasks run outside any long-lived event
    loop, so a synchronous engine is the simpler fit for both.

``DATABASE_URL`` is configured with the asyncpg scheme; the psycopg2 URL is
derived from it.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import Session, sessionmaker

from bulk_scraper.config.settings import get_settings

SYNC_DRIVER = "postgresql+psycopg2"


def sync_database_url(url: str) -> URL:
    """Return *url* with its PostgreSQL driver switched to psycopg2."""
    parsed = make_url(url)
    if parsed.get_backend_name() != "postgresql":
        return parsed
    return parsed.set(drivername=SYNC_DRIVER)


_settings = get_settings()

async_engine = create_async_engine(
    _settings.database_url,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,
)

AsyncSessionLocal: async_sessionmaker[AsyncSession] = async_sessionmaker(
    bind=async_engine,
    expire_on_commit=False,
    autoflush=False,
)

# One pooled connection per execution slot, plus headroom for aggregation.
sync_engine = create_engine(
    sync_database_url(_settings.database_url),
    pool_size=10,
    max_overflow=_settings.execution_concurrency + _settings.aggregation_concurrency,
    pool_pre_ping=True,
)

SyncSessionLocal: sessionmaker[Session] = sessionmaker(
    bind=sync_engine,
    expire_on_commit=False,
    autoflush=False,
)


def dispose_engines(*, include_sync: bool = True) -> None:
    """Drop pooled connections without closing ones another process owns.

    Called after a worker process forks, and after each task for the async
    engine because every ``asyncio.run`` starts a fresh event loop.
    """
    async_engine.sync_engine.dispose(close=False)
    if include_sync:
        sync_engine.dispose(close=False)


@contextmanager
def get_sync_session() -> Generator[Session, None, None]:
    """Yield a Session that is rolled back on error and always closed.

    Callers commit explicitly.
    """
    session = SyncSessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one AsyncSession per request."""
    async with AsyncSessionLocal() as session:
        yield session
