"""Engine and session-factory construction, idempotent schema creation."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from tmacloud.models import AppSettings, FileEntry, ShareLink, ShareLinkFile, User

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

logger = logging.getLogger(__name__)

TABLES = (User, AppSettings, FileEntry, ShareLink, ShareLinkFile)


def _is_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.endswith("://") or ":memory:" in url)


def create_engine(url: str, *, echo: bool = False) -> AsyncEngine:
    """Async engine for *url*, with SQLite pragmas applied on connect.

    An in-memory SQLite database is pinned to a single connection so every
    session sees the same data.
    """
    kwargs: dict[str, Any] = {"echo": echo}
    if _is_memory_sqlite(url):
        kwargs["poolclass"] = StaticPool
        kwargs["connect_args"] = {"check_same_thread": False}
    engine = create_async_engine(url, **kwargs)

    if engine.dialect.name == "sqlite":
        wal = not _is_memory_sqlite(url)

        @event.listens_for(engine.sync_engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: object, connection_record: object) -> None:
            cursor = dbapi_connection.cursor()  # type: ignore[union-attr]
            if wal:
                cursor.execute("PRAGMA journal_mode=WAL")
                result = cursor.fetchone()
                if result[0].lower() != "wal":
                    logger.warning("WAL mode not active, got: %s", result[0])
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def create_engine_and_factory(
    url: str, *, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine = create_engine(url, echo=echo)
    return engine, create_session_factory(engine)


async def create_schema(engine: AsyncEngine) -> None:
    """Create every table and index that does not exist yet. Safe to re-run."""
    async with engine.begin() as conn:
        for model in TABLES:
            table = model.__table__  # type: ignore[attr-defined]
            await conn.run_sync(lambda c, t=table: t.create(c, checkfirst=True))
    logger.debug("Schema ensured for %d tables", len(TABLES))
