"""CustomDriveService — validate, enable, and disable per-user custom drives."""

from __future__ import annotations

import asyncio
import logging
import os
from pathlib import PurePosixPath
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from tmacloud.models.files import StorageKind
from tmacloud.models.users import User

from .custom_drive import CustomDriveStore
from .exceptions import NotFoundError, PermissionDeniedError
from .operations import physical_targets, release_objects

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sqlalchemy.ext.asyncio import AsyncSession

    from .operations import ReleaseTarget
    from .tree import FileTree

logger = logging.getLogger(__name__)

SYSTEM_PATHS: tuple[str, ...] = (
    "/",
    "/bin",
    "/boot",
    "/dev",
    "/etc",
    "/home",
    "/lib",
    "/lib32",
    "/lib64",
    "/opt",
    "/proc",
    "/root",
    "/run",
    "/sbin",
    "/srv",
    "/sys",
    "/tmp",
    "/usr",
    "/var",
)
"""Directories (and everything beneath them) a drive may never point at."""


def _normalize(path: str) -> str:
    return os.path.normpath(path).lower()


def _overlaps(a: str, b: str) -> bool:
    """True when *a* and *b* are equal or one contains the other."""
    pa, pb = PurePosixPath(a), PurePosixPath(b)
    return pa == pb or pa.is_relative_to(pb) or pb.is_relative_to(pa)


class CustomDriveService:
    """Enable and disable custom drives for users of a ``FileTree``.

    *system_paths* lists host directories a drive may not use or live
    under; the managed storage root is always excluded as well.
    """

    def __init__(self, tree: FileTree, *, system_paths: Iterable[str] = SYSTEM_PATHS) -> None:
        self._tree = tree
        self._system_paths = tuple(_normalize(p) for p in system_paths)

    async def validate_path(self, session: AsyncSession, user_id: str, path: str) -> str:
        """Check *path* is usable as *user_id*'s drive; returns it normalized."""
        if not path or not path.strip():
            raise PermissionDeniedError("Custom drive path is required")
        path = path.strip()
        if ".." in PurePosixPath(path).parts or "~" in path:
            raise PermissionDeniedError("Custom drive path must not contain '..' or '~'")
        if not os.path.isabs(path):
            raise PermissionDeniedError("Custom drive path must be absolute")

        normalized = os.path.normpath(path)
        lowered = normalized.lower()
        for system in self._system_paths:
            if lowered == system or (system != "/" and lowered.startswith(system + "/")):
                raise PermissionDeniedError(f"Custom drive may not use a system directory: {path}")

        managed = _normalize(str(self._tree.managed_store.root))
        if _overlaps(lowered, managed):
            raise PermissionDeniedError("Custom drive may not overlap managed storage")

        result = await session.execute(
            select(User.id, User.custom_drive_path).where(
                User.id != user_id,
                User.custom_drive_enabled.is_(True),  # type: ignore[union-attr]
                User.custom_drive_path.is_not(None),  # type: ignore[union-attr]
            )
        )
        for other_id, other_path in result.all():
            if _overlaps(lowered, _normalize(other_path)):
                logger.info("Drive path %s overlaps the drive of %s", path, other_id)
                raise PermissionDeniedError("Custom drive path is already used by another user")

        return normalized

    async def enable(self, user_id: str, path: str) -> User:
        """Point *user_id*'s storage at *path*.

        An already-enabled drive cannot be switched to another path; it
        must be disabled first. Managed entries of the user are deleted,
        rows first and objects after commit.
        """
        tree = self._tree
        async with tree.session_scope() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            normalized = await self.validate_path(session, user_id, path)
            current = user.custom_drive_path
            if user.custom_drive_enabled and current and _normalize(current) != normalized.lower():
                raise PermissionDeniedError("Disable the current custom drive before changing its path")

        # Raises NotFoundError / PermissionDeniedError for a missing or non-directory path.
        await asyncio.to_thread(CustomDriveStore, normalized)

        try:
            async with tree.session_scope() as session:
                user = await session.get(User, user_id)
                assert user is not None
                user.custom_drive_enabled = True
                user.custom_drive_path = normalized
                targets = await self._drop_rows(session, user_id, StorageKind.MANAGED)
                await session.flush()
        except IntegrityError:
            raise PermissionDeniedError("Custom drive path is already used by another user") from None

        failures = await release_objects(targets)
        if failures:
            logger.warning("Enabling drive for %s left %d managed objects behind", user_id, failures)
        logger.info("Custom drive enabled for %s at %s", user_id, normalized)
        return user

    async def disable(self, user_id: str) -> User:
        """Switch *user_id* back to managed storage.

        Custom-drive rows and their share links are deleted; files on the
        host directory are left untouched.
        """
        tree = self._tree
        async with tree.session_scope() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            path = user.custom_drive_path
            await self._drop_rows(session, user_id, StorageKind.CUSTOM)
            user.custom_drive_enabled = False
            user.custom_drive_path = None
            await session.flush()
        if path:
            tree.forget_drive(path)
        logger.info("Custom drive disabled for %s", user_id)
        return user

    async def set_ignore_patterns(self, user_id: str, patterns: list[str]) -> list[str]:
        """Replace the glob patterns the scanner skips for *user_id*."""
        cleaned = list(dict.fromkeys(p.strip() for p in patterns if p and p.strip()))
        async with self._tree.session_scope() as session:
            user = await session.get(User, user_id)
            if user is None:
                raise NotFoundError(f"User not found: {user_id}")
            user.custom_drive_ignore_patterns = cleaned
            session.add(user)
            await session.flush()
        return cleaned

    async def _drop_rows(
        self, session: AsyncSession, user_id: str, backend: StorageKind
    ) -> list[ReleaseTarget]:
        """Delete the user's rows on *backend* and their share links.

        Returns the physical targets for managed rows; custom objects
        belong to the user and are never released here.
        """
        tree = self._tree
        model = tree.file_model
        result = await session.execute(
            select(model).where(model.owner_id == user_id, model.backend == backend)
        )
        rows = list(result.scalars().all())
        if not rows:
            return []
        await tree.sharing.remove_for_entries(session, [row.id for row in rows])
        await session.execute(
            delete(model).where(model.owner_id == user_id, model.backend == backend)
        )
        logger.debug("Dropped %d %s rows of %s", len(rows), backend.value, user_id)
        if backend == StorageKind.MANAGED:
            return physical_targets(rows, managed=tree.managed_store, drive=None)
        return []

