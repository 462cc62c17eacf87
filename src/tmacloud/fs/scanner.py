"""CustomDriveScanner — reconcile a user's host directory with the tree.

New files and folders on disk get rows, changed files get their size and
mtime refreshed, moved entries are re-parented, and rows whose object has
vanished are trashed (never purged) with ``trashed_by_scanner`` set so a
later scan can revive them when the object comes back. Entries the user
trashed themselves are left alone unless a newer file has taken their
path, in which case the trashed row lets go of the path and the file gets
a row of its own. A drive that is missing or unreadable is skipped
entirely and treated as temporarily unmounted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import posixpath
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError
from sqlmodel import select

from tmacloud.models.files import EntryType, StorageKind
from tmacloud.models.users import User

from .exceptions import TreeError
from .metadata import as_utc
from .operations import guess_mime_type, parent_key
from .types import ScanStats

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tmacloud.models.files import FileEntryBase

    from .custom_drive import CustomDriveStore
    from .tree import FileTree
    from .types import ObjectStat

logger = logging.getLogger(__name__)

MTIME_TOLERANCE_SECONDS = 1.0


def _drive_readable(path: str) -> bool:
    return os.path.isdir(path) and os.access(path, os.R_OK | os.X_OK)


class CustomDriveScanner:
    """Walks custom drives and applies the differences to ``files`` rows."""

    def __init__(self, tree: FileTree) -> None:
        self._tree = tree

    async def scan_all(self) -> dict[str, ScanStats]:
        """Scan every user with an enabled custom drive. Never raises."""
        async with self._tree.session_scope() as session:
            result = await session.execute(
                select(User.id).where(
                    User.custom_drive_enabled.is_(True),  # type: ignore[union-attr]
                    User.custom_drive_path.is_not(None),  # type: ignore[union-attr]
                )
            )
            user_ids = list(result.scalars().all())

        results: dict[str, ScanStats] = {}
        for user_id in user_ids:
            try:
                results[user_id] = await self.scan_user(user_id)
            except Exception:
                logger.error("Custom drive scan failed for %s", user_id, exc_info=True)
                results[user_id] = ScanStats(errors=1)
        return results

    async def scan_user(self, user_id: str) -> ScanStats:
        """Reconcile one user's drive. Returns what changed."""
        stats = ScanStats()
        async with self._tree.session_scope() as session:
            user = await session.get(User, user_id)
            if user is None or not user.custom_drive_enabled or not user.custom_drive_path:
                stats.skipped = True
                return stats
            path = user.custom_drive_path
            patterns = list(user.custom_drive_ignore_patterns or [])

        if not await asyncio.to_thread(_drive_readable, path):
            logger.warning("Custom drive of %s is unreadable, skipping scan: %s", user_id, path)
            stats.skipped = True
            return stats

        walked_at = datetime.now(UTC)
        store = self._tree.drive_store(path)
        try:
            objects = await store.walk(patterns)
        except TreeError:
            logger.warning("Could not walk custom drive of %s", user_id, exc_info=True)
            stats.skipped = True
            return stats

        try:
            async with self._tree.session_scope() as session:
                await self._apply(session, user_id, store, objects, walked_at, stats)
        except IntegrityError:
            logger.error("Custom drive scan of %s hit a constraint; rolled back", user_id, exc_info=True)
            return ScanStats(errors=1)

        if stats.created or stats.updated or stats.trashed or stats.revived:
            logger.info(
                "Scanned drive of %s: %d created, %d updated, %d trashed, %d revived",
                user_id,
                stats.created,
                stats.updated,
                stats.trashed,
                stats.revived,
            )
        return stats

    async def _apply(
        self,
        session: AsyncSession,
        owner_id: str,
        store: CustomDriveStore,
        objects: list[ObjectStat],
        walked_at: datetime,
        stats: ScanStats,
    ) -> None:
        """Apply a walk taken at *walked_at* to the owner's rows.

        Rows created or modified since then reflect mutations the walk
        may have missed; they are neither changed nor trashed here.
        """
        tree = self._tree
        model = tree.file_model
        result = await session.execute(
            select(model).where(model.owner_id == owner_id, model.backend == StorageKind.CUSTOM)
        )
        rows = list(result.scalars().all())
        by_key: dict[tuple[EntryType, str], FileEntryBase] = {
            (EntryType(row.type), row.storage_key): row for row in rows if row.storage_key
        }
        recent = {row.id for row in rows if self._touched_since(row, walked_at)}
        folder_ids: dict[str, str] = {}
        seen: set[str] = set()

        for obj in sorted(objects, key=lambda o: o.key.count("/")):
            entry_type = EntryType.FOLDER if obj.is_dir else EntryType.FILE
            container = parent_key(obj.key)
            parent_id = folder_ids.get(container) if container else None
            if container and parent_id is None:
                # Inside a folder the user trashed.
                continue

            row = by_key.get((entry_type, obj.key))
            if row is not None and row.deleted_at is not None and not row.trashed_by_scanner:
                if entry_type == EntryType.FOLDER or not self._replaced_after_trash(row, obj):
                    continue
                logger.info("New object at %s replaces trashed entry %s", obj.key, row.id)
                row.storage_key = None
                await session.flush()
                row = None

            if row is None:
                if not await store.exists(obj.key):
                    # Renamed or removed since the walk.
                    continue
                row = model(
                    owner_id=owner_id,
                    parent_id=parent_id,
                    name=posixpath.basename(obj.key),
                    type=entry_type,
                    size=obj.size,
                    storage_key=obj.key,
                    backend=StorageKind.CUSTOM,
                    mime_type=guess_mime_type(obj.key) if not obj.is_dir else None,
                    modified_at=obj.mtime,
                )
                session.add(row)
                stats.created += 1
            elif row.id in recent:
                pass  # changed through the tree after the walk
            elif row.deleted_at is not None:
                row.deleted_at = None
                row.trash_root_id = None
                row.trashed_by_scanner = False
                row.parent_id = parent_id
                self._refresh(row, obj)
                stats.revived += 1
            else:
                changed = False
                if row.parent_id != parent_id:
                    row.parent_id = parent_id
                    changed = True
                if entry_type == EntryType.FILE and self._differs(row, obj):
                    self._refresh(row, obj)
                    changed = True
                if changed:
                    stats.updated += 1

            seen.add(row.id)
            if entry_type == EntryType.FOLDER:
                folder_ids[obj.key] = row.id

        await session.flush()

        now = datetime.now(UTC)
        missing = [
            row
            for row in rows
            if row.deleted_at is None and row.id not in seen and row.id not in recent
        ]
        for row in sorted(missing, key=lambda r: (r.storage_key or "").count("/")):
            if row.deleted_at is not None:
                continue
            stamped = await tree.trash_service.trash_entry(session, row, now=now, by_scanner=True)
            if stamped:
                stats.trashed += 1

    @staticmethod
    def _touched_since(row: FileEntryBase, moment: datetime) -> bool:
        created = as_utc(row.created_at)
        modified = as_utc(row.modified_at)
        return (created is not None and created >= moment) or (
            modified is not None and modified >= moment
        )

    @staticmethod
    def _replaced_after_trash(row: FileEntryBase, obj: ObjectStat) -> bool:
        trashed = as_utc(row.deleted_at)
        return trashed is not None and obj.mtime > trashed

    @staticmethod
    def _differs(row: FileEntryBase, obj: ObjectStat) -> bool:
        if (row.size or 0) != obj.size:
            return True
        modified = as_utc(row.modified_at)
        if modified is None:
            return True
        return abs((modified - obj.mtime).total_seconds()) > MTIME_TOLERANCE_SECONDS

    @staticmethod
    def _refresh(row: FileEntryBase, obj: ObjectStat) -> None:
        row.size = obj.size
        row.modified_at = obj.mtime
        row.checksum = None
        if not obj.is_dir:
            row.mime_type = guess_mime_type(obj.key)
