"""Async SQLAlchemy engine, session factory, and FastAPI dependency.

``engine`` and ``async_session_factory`` are module globals so tests can
swap in an in-memory database; ``get_db`` resolves them at call time.
"""

from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.config import get_settings


def _enable_sqlite_foreign_keys(async_engine: AsyncEngine) -> None:
    # SQLite ignores ON DELETE CASCADE unless the pragma is set per connection.
    @event.listens_for(async_engine.sync_engine, "connect")
    def _set_pragma(dbapi_connection, _record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an engine tuned for the URL's backend.

    Postgres gets a bounded, pre-pinged pool. SQLite shares a single
    connection (an in-memory database lives per connection) and has
    foreign keys switched on so ledger and message cascades match Postgres.
    """
    if database_url.startswith("postgresql"):
        return create_async_engine(
            database_url, echo=echo, pool_size=20, max_overflow=10, pool_pre_ping=True
        )
    if "sqlite" in database_url:
        async_engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
        _enable_sqlite_foreign_keys(async_engine)
        return async_engine
    return create_async_engine(database_url, echo=echo)


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Handlers keep using ORM rows after committing mid-request.
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


_settings = get_settings()
engine = build_engine(_settings.database_url, echo=_settings.debug)
async_session_factory = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields a session; commits on success.

    Billing services open their own transactions, so handlers commit
    before calling them a second time on the same session.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
