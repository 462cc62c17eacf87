"""Standalone orchestration helpers shared by FileTree and the sweepers.

Each function takes services and stores as parameters. The relational
change is always made first; physical cleanup after commit is best-effort
and a failure only leaves an orphan candidate for the reconciler.
"""

from __future__ import annotations

import logging
import mimetypes
import posixpath
from typing import TYPE_CHECKING, NamedTuple

from tmacloud.models.files import EntryType, StorageKind

from .custom_drive import CustomDriveStore
from .exceptions import TreeError
from .metadata import as_utc

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from sqlalchemy.ext.asyncio import AsyncSession

    from tmacloud.models.files import FileEntryBase

    from .metadata import MetadataService
    from .protocol import ByteStore
    from .sharing import ShareLinkService
    from .trash import TrashService

    PhysicalTarget = tuple[ByteStore, str]

logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


def guess_mime_type(name: str) -> str:
    return mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE


def parent_key(storage_key: str) -> str | None:
    """Key of the folder containing *storage_key* on a custom drive."""
    return posixpath.dirname(storage_key) or None


# =============================================================================
# Physical cleanup
# =============================================================================


class ReleaseTarget(NamedTuple):
    """Physical object of a purged row and when that row was trashed."""

    store: ByteStore
    key: str
    trashed_at: datetime | None = None


def physical_targets(
    rows: Iterable[FileEntryBase],
    *,
    managed: ByteStore,
    drive: CustomDriveStore | None,
) -> list[ReleaseTarget]:
    """Objects to release for *rows*: files first, then folders deepest first.

    Managed folders have no physical object. Custom rows whose drive is
    unavailable are logged and skipped.
    """
    files: list[ReleaseTarget] = []
    folders: list[ReleaseTarget] = []
    for row in rows:
        if row.storage_key is None:
            continue
        if row.backend == StorageKind.CUSTOM and drive is None:
            logger.warning(
                "Custom drive unavailable; orphan candidate %s (entry %s)",
                row.storage_key,
                row.id,
            )
            continue
        store = managed if row.backend == StorageKind.MANAGED else drive
        assert store is not None  # for type narrowing
        target = ReleaseTarget(store, row.storage_key, as_utc(row.deleted_at))
        match EntryType(row.type):
            case EntryType.FILE:
                files.append(target)
            case EntryType.FOLDER:
                folders.append(target)
    folders.sort(key=lambda target: target.key.count("/"), reverse=True)
    return files + folders


async def release_objects(targets: Iterable[ReleaseTarget]) -> int:
    """Delete every target, logging failures as orphan candidates.

    Returns the number of failures. Missing objects are not failures.
    Custom-drive objects go through ``CustomDriveStore.release`` and may
    be kept when something new occupies the key.
    """
    failures = 0
    for store, key, trashed_at in targets:
        try:
            if isinstance(store, CustomDriveStore):
                if not await store.release(key, trashed_at=trashed_at):
                    logger.info("Kept %s on %r: changed or filled since it was trashed", key, store)
                continue
            await store.delete(key)
        except TreeError:
            failures += 1
            logger.warning("Orphan candidate left behind: %s on %r", key, store, exc_info=True)
    return failures


async def discard_written(written: list[PhysicalTarget]) -> None:
    """Undo physical writes of a failed operation, newest first."""
    for store, key in reversed(written):
        try:
            await store.delete(key)
        except TreeError:
            logger.warning("Could not discard %s on %r", key, store, exc_info=True)
    written.clear()


# =============================================================================
# Relational helpers
# =============================================================================


async def purge_subtree(
    session: AsyncSession,
    entry: FileEntryBase,
    *,
    trash: TrashService,
    sharing: ShareLinkService,
) -> list[FileEntryBase]:
    """Delete the rows of a trashed *entry*, its subtree, and their share links."""
    doomed = await trash.purge_entry(session, entry)
    await sharing.remove_for_entries(session, [row.id for row in doomed])
    await session.flush()
    return doomed


async def rekey_subtree(
    session: AsyncSession,
    entry: FileEntryBase,
    old_key: str,
    new_key: str,
    *,
    metadata: MetadataService,
) -> None:
    """Point *entry* and every descendant's key at *new_key* after a physical move."""
    entry.storage_key = new_key
    if entry.type != EntryType.FOLDER:
        return
    prefix = old_key + "/"
    for row in await metadata.descendants(session, entry.owner_id, entry.id):
        if row.storage_key is not None and row.storage_key.startswith(prefix):
            row.storage_key = new_key + "/" + row.storage_key[len(prefix) :]
