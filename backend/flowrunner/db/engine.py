"""SQLAlchemy async engine and session factory."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from flowrunner.config import Settings
from flowrunner.db.models import Base


def _build_engine_kwargs(settings: Settings) -> dict:
    """Return engine kwargs appropriate for the configured dialect."""
    if settings.is_postgres:
        return {
            "echo": settings.FLOW_DB_ECHO,
            "pool_size": settings.FLOW_DB_POOL_SIZE,
            "max_overflow": settings.FLOW_DB_MAX_OVERFLOW,
            "pool_pre_ping": True,
            "pool_recycle": 1800,
        }
    return {
        "echo": settings.FLOW_DB_ECHO,
        "connect_args": {"check_same_thread": False},
    }


def make_engine(settings: Settings, url: str | None = None) -> AsyncEngine:
    """Create an engine for ``url`` (defaults to ``FLOW_DB_URL``)."""
    url = url or settings.FLOW_DB_URL
    engine = create_async_engine(url, **_build_engine_kwargs(settings))

    if url.startswith("sqlite"):
        # WAL lets readers proceed alongside the single writer;
        # busy_timeout waits up to 5 s instead of failing with "database is locked".
        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragmas(dbapi_conn, _conn_rec):  # type: ignore[misc]
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
