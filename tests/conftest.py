"""Shared fixtures for tmacloud tests."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

import pytest

from tmacloud.db import create_engine, create_schema, create_session_factory
from tmacloud.events import EventBus
from tmacloud.fs.managed_store import ManagedStore
from tmacloud.fs.tree import FileTree
from tmacloud.models import User

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable
    from pathlib import Path

    from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker


@pytest.fixture
async def async_engine() -> AsyncIterator[AsyncEngine]:
    """Async in-memory SQLite engine with all tables created."""
    eng = create_engine("sqlite+aiosqlite://")
    await create_schema(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(async_engine)


@pytest.fixture
async def async_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Bare session for service-level tests. Do not combine with ``tree``."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def managed_store(tmp_path: Path) -> ManagedStore:
    return ManagedStore(tmp_path / "uploads")


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def tree(
    session_factory: async_sessionmaker[AsyncSession],
    managed_store: ManagedStore,
    event_bus: EventBus,
) -> FileTree:
    return FileTree(session_factory, managed_store, event_bus=event_bus)


@pytest.fixture
def make_user(
    session_factory: async_sessionmaker[AsyncSession],
) -> Callable[..., Awaitable[User]]:
    """Insert a ``users`` row and return it."""

    async def _make(user_id: str = "alice", **fields: Any) -> User:
        async with session_factory() as session:
            user = User(id=user_id, **fields)
            session.add(user)
            await session.commit()
        return user

    return _make


@pytest.fixture
async def alice(make_user: Callable[..., Awaitable[User]]) -> str:
    """Managed-storage user without an explicit storage limit."""
    user = await make_user("alice")
    return user.id

