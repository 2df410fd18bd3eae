"""
core/database.py -- Async SQLAlchemy engine factory shared by the stores.

Both repositories (auth/store.py and blog/store.py) use SQLAlchemy Core on
top of the asyncio extension so every query suspends the request instead of
blocking the event loop. Swapping SQLite for PostgreSQL is a connection string
change (sqlite+aiosqlite:// -> postgresql+asyncpg://), not a rewrite.

In-memory SQLite URLs get a StaticPool: every connection from the pool is the
same underlying connection, otherwise each checkout would see a blank schema.
"""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import StaticPool


def _set_sqlite_pragmas(dbapi_conn, connection_record) -> None:
    """Enable WAL on every new SQLite connection.

    PRAGMAs are per-connection, so they are set from a connect listener rather
    than once at startup.
    """
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def is_memory_url(db_url: str) -> bool:
    return db_url.startswith("sqlite") and (":memory:" in db_url or db_url.rstrip("/").endswith("sqlite+aiosqlite:"))


def make_engine(db_url: str) -> AsyncEngine:
    """Create an AsyncEngine with the SQLite tweaks the stores rely on."""
    kwargs: dict = {}
    if db_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if is_memory_url(db_url):
            kwargs["poolclass"] = StaticPool
    engine = create_async_engine(db_url, **kwargs)
    if db_url.startswith("sqlite"):
        event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine
