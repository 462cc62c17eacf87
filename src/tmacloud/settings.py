"""AppSettings access: admin-only mutation and a stale-while-revalidate cache."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import update
from sqlmodel import select

from tmacloud.fs.exceptions import PermissionDeniedError
from tmacloud.models.users import APP_SETTINGS_ID, AppSettings

if TYPE_CHECKING:
    from collections.abc import Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset(
    {
        "signup_enabled",
        "max_upload_size_bytes",
        "hide_file_extensions",
        "electron_only_access",
        "onlyoffice_url",
        "onlyoffice_jwt_secret",
        "share_base_url",
    }
)


@dataclass(frozen=True)
class SettingsSnapshot:
    """Detached, immutable copy of the AppSettings row."""

    signup_enabled: bool
    max_upload_size_bytes: int
    hide_file_extensions: bool
    electron_only_access: bool
    onlyoffice_url: str | None
    onlyoffice_jwt_secret: str | None
    share_base_url: str | None
    first_user_id: str | None

    @classmethod
    def from_row(cls, row: AppSettings) -> SettingsSnapshot:
        return cls(**{f.name: getattr(row, f.name) for f in fields(cls)})


# =============================================================================
# Service
# =============================================================================


class AppSettingsService:
    """Reads and mutates the singleton ``app_settings`` row.

    Only the first registered user may change settings. Receives a
    session at call time; flushes but does not commit.
    """

    async def get(self, session: AsyncSession) -> AppSettings | None:
        result = await session.execute(
            select(AppSettings).where(AppSettings.id == APP_SETTINGS_ID)
        )
        return result.scalar_one_or_none()

    async def get_or_create(self, session: AsyncSession) -> AppSettings:
        row = await self.get(session)
        if row is None:
            row = AppSettings(id=APP_SETTINGS_ID)
            session.add(row)
            await session.flush()
        return row

    async def claim_first_user(self, session: AsyncSession, user_id: str) -> bool:
        """Record *user_id* as the first user unless one is already set.

        The conditional UPDATE makes concurrent sign-ups race safely: only
        one of them sees a matched row.
        """
        await self.get_or_create(session)
        result = await session.execute(
            update(AppSettings)
            .where(
                AppSettings.id == APP_SETTINGS_ID,
                AppSettings.first_user_id.is_(None),  # type: ignore[union-attr]
            )
            .values(first_user_id=user_id, updated_at=datetime.now(UTC))
        )
        claimed = result.rowcount == 1
        if claimed:
            logger.info("First user recorded: %s", user_id)
        return claimed

    async def is_admin(self, session: AsyncSession, user_id: str) -> bool:
        row = await self.get(session)
        return row is not None and row.first_user_id == user_id

    async def update(
        self, session: AsyncSession, actor_id: str, **changes: Any
    ) -> AppSettings:
        """Apply *changes* on behalf of *actor_id*."""
        unknown = set(changes) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown settings: {', '.join(sorted(unknown))}")
        size = changes.get("max_upload_size_bytes")
        if size is not None and size <= 0:
            raise ValueError("max_upload_size_bytes must be positive")

        row = await self.get_or_create(session)
        if row.first_user_id is None or row.first_user_id != actor_id:
            raise PermissionDeniedError("Only the first user can change settings")

        for key, value in changes.items():
            setattr(row, key, value)
        row.updated_at = datetime.now(UTC)
        await session.flush()
        return row


# =============================================================================
# Cache
# =============================================================================


class SettingsCache:
    """Time-bounded cache of the settings row with stale-while-revalidate.

    A fresh value is served straight from memory. Once older than *ttl*
    seconds the stale value is still served while a single background
    refresh reloads it. Only the very first read (or a read after
    ``invalidate``) waits on the database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl: float = 60.0,
        defaults: SettingsSnapshot | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._session_factory = session_factory
        self._ttl = ttl
        self._defaults = defaults
        self._clock = clock
        self._service = AppSettingsService()
        self._value: SettingsSnapshot | None = None
        self._loaded_at = 0.0
        self._refresh_task: asyncio.Task[SettingsSnapshot] | None = None

    async def get(self) -> SettingsSnapshot:
        if self._value is None:
            return await self._refresh_once()
        if self._clock() - self._loaded_at >= self._ttl and self._refresh_task is None:
            self._refresh_task = asyncio.get_running_loop().create_task(self._load())
            self._refresh_task.add_done_callback(self._on_background_done)
        return self._value

    async def refresh(self) -> SettingsSnapshot:
        """Reload now, joining an in-flight refresh if there is one."""
        return await self._refresh_once()

    def invalidate(self) -> None:
        """Forget the cached value; the next ``get`` reloads it."""
        self._value = None

    @property
    def is_stale(self) -> bool:
        return self._value is None or self._clock() - self._loaded_at >= self._ttl

    async def _refresh_once(self) -> SettingsSnapshot:
        if self._refresh_task is None:
            self._refresh_task = asyncio.get_running_loop().create_task(self._load())
            self._refresh_task.add_done_callback(self._on_background_done)
        return await asyncio.shield(self._refresh_task)

    async def _load(self) -> SettingsSnapshot:
        async with self._session_factory() as session:
            row = await self._service.get(session)
        snapshot = SettingsSnapshot.from_row(row or AppSettings(id=APP_SETTINGS_ID))
        if row is None and self._defaults is not None:
            snapshot = self._defaults
        self._value = snapshot
        self._loaded_at = self._clock()
        return snapshot

    def _on_background_done(self, task: asyncio.Task[SettingsSnapshot]) -> None:
        self._refresh_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.warning(
                "Settings refresh failed; serving stale value", exc_info=task.exception()
            )
