"""Background reconcilers: trash retention, orphan objects, expired shares.

Each sweeper is safe to run concurrently with live mutations and with the
others, safe to re-run immediately, and never raises to its caller:
failures are logged per item and surfaced as counters in ``SweepStats``.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlmodel import select

from tmacloud.models.files import EntryType, StorageKind

from .exceptions import StorageIOError, TreeError
from .metadata import as_utc
from .operations import physical_targets, purge_subtree, release_objects
from .types import SweepStats

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from .custom_drive import CustomDriveStore
    from .operations import ReleaseTarget
    from .tree import FileTree

logger = logging.getLogger(__name__)


class TrashSweeper:
    """Permanently deletes entries trashed longer than ``trash_retention``.

    Works in batches of ``sweep_batch_size`` rows, one transaction per
    batch. Physical objects are released after each commit; a failure on
    one object is logged and counted without stopping the batch.
    """

    def __init__(self, tree: FileTree) -> None:
        self._tree = tree

    async def run_once(self, now: datetime | None = None) -> SweepStats:
        config = self._tree.config
        cutoff = (now or datetime.now(UTC)) - config.trash_retention
        stats = SweepStats()
        while True:
            try:
                purged, targets, examined = await self._purge_batch(cutoff, stats)
            except Exception:
                logger.error("Trash sweep batch failed", exc_info=True)
                stats.failed += 1
                break
            stats.examined += examined
            stats.deleted += purged
            stats.failed += await release_objects(targets)
            if purged == 0 or examined < config.sweep_batch_size:
                break
        if stats.deleted or stats.failed:
            logger.info(
                "Trash sweep: %d entries purged, %d failures", stats.deleted, stats.failed
            )
        return stats

    async def _purge_batch(
        self, cutoff: datetime, stats: SweepStats
    ) -> tuple[int, list[ReleaseTarget], int]:
        tree = self._tree
        purged = 0
        targets: list[ReleaseTarget] = []
        drives: dict[str, CustomDriveStore | None] = {}
        async with tree.session_scope() as session:
            batch = await tree.trash_service.expired_ids(
                session, cutoff, tree.config.sweep_batch_size
            )
            for owner_id, entry_id in batch:
                entry = await session.get(tree.file_model, entry_id)
                if entry is None or entry.deleted_at is None:
                    continue
                try:
                    doomed = await purge_subtree(
                        session, entry, trash=tree.trash_service, sharing=tree.sharing
                    )
                except TreeError:
                    logger.warning("Could not purge expired entry %s", entry_id, exc_info=True)
                    stats.failed += 1
                    continue
                if owner_id not in drives:
                    drives[owner_id] = await self._drive(session, owner_id)
                targets.extend(
                    physical_targets(doomed, managed=tree.managed_store, drive=drives[owner_id])
                )
                purged += len(doomed)
        return purged, targets, len(batch)

    async def _drive(self, session: AsyncSession, owner_id: str) -> CustomDriveStore | None:
        try:
            return await self._tree.drive_for(session, owner_id)
        except StorageIOError:
            logger.warning("Custom drive of %s unavailable during trash sweep", owner_id)
            return None


class OrphanSweeper:
    """Reclaims managed objects that no row references.

    Any row, trashed or not, protects its object: trashed entries stay
    restorable until purged. Objects younger than ``orphan_grace`` are
    left alone so an upload between its write and its insert is never
    touched. Rows whose object is missing are reported as dangling and
    logged, never deleted.
    """

    def __init__(self, tree: FileTree) -> None:
        self._tree = tree

    async def run_once(self, now: datetime | None = None) -> SweepStats:
        tree = self._tree
        now = now or datetime.now(UTC)
        grace = tree.config.orphan_grace
        stats = SweepStats()
        model = tree.file_model

        listed_at = datetime.now(UTC)
        try:
            objects = await tree.managed_store.iter_objects()
            async with tree.session_scope() as session:
                result = await session.execute(
                    select(model.id, model.storage_key, model.created_at).where(
                        model.backend == StorageKind.MANAGED,
                        model.type == EntryType.FILE,
                        model.storage_key.is_not(None),  # type: ignore[union-attr]
                    )
                )
                rows = result.all()
                referenced = {key: entry_id for entry_id, key, _created in rows}
                settled = {
                    key for _id, key, created in rows if (as_utc(created) or listed_at) < listed_at
                }
        except Exception:
            logger.error("Orphan sweep could not enumerate storage", exc_info=True)
            stats.failed += 1
            return stats

        present: set[str] = set()
        for obj in objects:
            stats.examined += 1
            present.add(obj.key)
            if obj.key in referenced:
                continue
            if now - obj.mtime < grace:
                continue
            try:
                await tree.managed_store.delete(obj.key)
            except TreeError:
                stats.failed += 1
                logger.warning("Could not delete orphan %s", obj.key, exc_info=True)
                continue
            stats.deleted += 1
            logger.info("Deleted orphan object %s", obj.key)

        for key, entry_id in referenced.items():
            if key not in present and key in settled:
                stats.dangling.append(entry_id)
                logger.warning("Dangling row: entry %s references missing object %s", entry_id, key)

        return stats


class ShareSweeper:
    """Deletes share links that expired more than ``share_retention`` ago.

    Expiry is enforced at access time regardless; this only drops rows.
    """

    def __init__(self, tree: FileTree) -> None:
        self._tree = tree

    async def run_once(self, now: datetime | None = None) -> SweepStats:
        tree = self._tree
        before = (now or datetime.now(UTC)) - tree.config.share_retention
        stats = SweepStats()
        try:
            async with tree.session_scope() as session:
                stats.deleted = await tree.sharing.purge_expired(session, before)
        except Exception:
            logger.error("Share sweep failed", exc_info=True)
            stats.failed += 1
        return stats
