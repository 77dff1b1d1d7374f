"""Async engine and session factory."""

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)


def create_engine(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Build the async engine for db_url.

    Server backends (postgresql+psycopg) get a bounded, pre-pinged pool sized
    for the concurrent sweep. SQLite keeps the driver's own pool.
    """
    url = make_url(db_url)
    if url.get_backend_name() == "sqlite":
        return create_async_engine(url, echo=False)

    return create_async_engine(
        url,
        pool_size=pool_size,
        max_overflow=0,
        pool_pre_ping=True,
        pool_recycle=1800,
        echo=False,
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create the session factory shared by the API, the sweeper and the CLI.

    Sessions keep attributes loaded after commit, so snapshots handed out by a
    unit of work stay readable once it has closed.
    """
    return async_sessionmaker(
        create_engine(db_url, pool_size),
        class_=AsyncSession,
        expire_on_commit=False,
    )
