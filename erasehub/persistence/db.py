from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy import event
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from erasehub.core.config import get_settings


def _configure_sqlite(engine: AsyncEngine) -> None:
    # pysqlite-based drivers manage BEGIN themselves and break SAVEPOINT; emit our own BEGIN.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None
        # WAL lets an open reader coexist with a writer on another connection.
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN")


def build_engine(
    url: str | URL,
    *,
    connect_args: dict[str, Any] | None = None,
    pooled: bool = True,
    pool_size: int = 5,
    max_overflow: int = 5,
) -> AsyncEngine:
    """Create an async engine with the pool and SQLite settings used for every store."""
    backend = make_url(url).get_backend_name()
    kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if connect_args:
        kwargs["connect_args"] = connect_args
    if not pooled:
        kwargs["poolclass"] = NullPool
    elif backend != "sqlite":
        # Configure bounded pools for predictable latency under load.
        kwargs["pool_size"] = max(1, int(pool_size))
        kwargs["max_overflow"] = max(0, int(max_overflow))
        kwargs["pool_timeout"] = 30
        kwargs["pool_recycle"] = 1800
    engine = create_async_engine(url, **kwargs)
    if backend == "sqlite":
        _configure_sqlite(engine)
    return engine


settings = get_settings()
engine = build_engine(
    settings.database_url,
    pool_size=settings.api_db_pool_size,
    max_overflow=settings.api_db_max_overflow,
)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def pool_stats() -> dict[str, int | None]:
    # Expose DB pool counters for ops visibility without querying database internals.
    pool = engine.sync_engine.pool
    checked_out_fn = getattr(pool, "checkedout", None)
    checked_in_fn = getattr(pool, "checkedin", None)
    overflow_fn = getattr(pool, "overflow", None)
    size_fn = getattr(pool, "size", None)
    return {
        "size": int(size_fn()) if callable(size_fn) else None,
        "checked_out": int(checked_out_fn()) if callable(checked_out_fn) else None,
        "checked_in": int(checked_in_fn()) if callable(checked_in_fn) else None,
        "overflow": int(overflow_fn()) if callable(overflow_fn) else None,
    }
