"""TrashService — eager soft-delete cascade, restore, and purge.

Trashing stamps the entry and every live descendant with the same
``deleted_at`` and a ``trash_root_id`` naming the entry that was trashed.
Restore revives exactly the rows carrying that stamp, so descendants that
were trashed on their own beforehand stay in the trash.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlmodel import select

from tmacloud.models.files import EntryType, FileEntry

from .exceptions import InvariantViolationError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tmacloud.models.files import FileEntryBase

    from .metadata import MetadataService
    from .resolver import NameResolver, PhysicalExists


class TrashService:
    """Trash management: trash, restore, list roots, purge.

    Depends on ``MetadataService`` for subtree walks and ``NameResolver``
    for disambiguating names on restore. Physical storage is never
    touched here; callers act on the rows this service returns.
    """

    def __init__(
        self,
        metadata: MetadataService,
        resolver: NameResolver,
        file_model: type[FileEntryBase] = FileEntry,
    ) -> None:
        self._metadata = metadata
        self._resolver = resolver
        self._file_model = file_model

    async def trash_entry(
        self,
        session: AsyncSession,
        entry: FileEntryBase,
        *,
        now: datetime | None = None,
        by_scanner: bool = False,
    ) -> list[FileEntryBase]:
        """Soft-delete *entry* and its live subtree. Flushes but does not commit."""
        if entry.deleted_at is not None:
            return []
        now = now or datetime.now(UTC)
        subtree = await self._metadata.descendants(
            session, entry.owner_id, entry.id, live_only=True
        )
        stamped = [entry, *subtree]
        for row in stamped:
            row.deleted_at = now
            row.trash_root_id = entry.id
            row.trashed_by_scanner = by_scanner
        await session.flush()
        return stamped

    async def restore_entry(
        self,
        session: AsyncSession,
        entry: FileEntryBase,
        *,
        physical_exists: PhysicalExists | None = None,
    ) -> list[FileEntryBase]:
        """Clear the trash stamp on *entry* and its same-batch descendants.

        If the original parent is trashed or gone the entry moves to the
        root level. A name taken at the destination is disambiguated.
        Returns the revived rows, *entry* first. Flushes but does not commit.
        """
        if entry.deleted_at is None:
            raise InvariantViolationError(f"Entry is not in trash: {entry.id}")

        batch_id = entry.trash_root_id or entry.id
        subtree = [
            row
            for row in await self._metadata.descendants(session, entry.owner_id, entry.id)
            if row.deleted_at is not None and row.trash_root_id == batch_id
        ]

        target_parent = await self.restore_target(session, entry)
        entry.name = await self._resolver.resolve_name(
            session,
            entry.owner_id,
            target_parent,
            entry.name,
            EntryType(entry.type),
            auto_rename=True,
            exclude_id=entry.id,
            physical_exists=physical_exists,
        )
        entry.parent_id = target_parent

        now = datetime.now(UTC)
        for row in (entry, *subtree):
            row.deleted_at = None
            row.trash_root_id = None
            row.trashed_by_scanner = False
        entry.modified_at = now
        await session.flush()
        return [entry, *subtree]

    async def restore_target(self, session: AsyncSession, entry: FileEntryBase) -> str | None:
        """Parent a restored *entry* returns to: its own, or root if that is trashed or gone."""
        if entry.parent_id is None:
            return None
        parent = await self._metadata.get_entry(
            session, entry.owner_id, entry.parent_id, include_deleted=True
        )
        if parent is None or parent.deleted_at is not None:
            return None
        return parent.id

    async def list_trash(self, session: AsyncSession, owner_id: str) -> list[FileEntryBase]:
        """Directly trashed entries of *owner_id*, newest first."""
        model = self._file_model
        result = await session.execute(
            select(model)
            .where(
                model.owner_id == owner_id,
                model.deleted_at.is_not(None),  # type: ignore[union-attr]
                model.trash_root_id == model.id,
            )
            .order_by(model.deleted_at.desc(), model.name)  # type: ignore[union-attr]
        )
        return list(result.scalars().all())

    async def list_trash_ids(self, session: AsyncSession, owner_id: str) -> list[str]:
        """Ids of every trashed entry of *owner_id*."""
        model = self._file_model
        result = await session.execute(
            select(model.id).where(
                model.owner_id == owner_id,
                model.deleted_at.is_not(None),  # type: ignore[union-attr]
            )
        )
        return list(result.scalars().all())

    async def expired_ids(
        self, session: AsyncSession, cutoff: datetime, limit: int
    ) -> list[tuple[str, str]]:
        """``(owner_id, id)`` of up to *limit* rows trashed before *cutoff*."""
        model = self._file_model
        result = await session.execute(
            select(model.owner_id, model.id)
            .where(
                model.deleted_at.is_not(None),  # type: ignore[union-attr]
                model.deleted_at < cutoff,  # type: ignore[operator]
            )
            .order_by(model.deleted_at)
            .limit(limit)
        )
        return [(owner, entry_id) for owner, entry_id in result.all()]

    async def purge_entry(
        self, session: AsyncSession, entry: FileEntryBase
    ) -> list[FileEntryBase]:
        """Delete the rows of *entry* and its whole subtree.

        *entry* must already be in the trash. Returns the deleted rows so
        the caller can release their physical objects after commit.
        Flushes but does not commit.
        """
        if entry.deleted_at is None:
            raise InvariantViolationError(
                f"Entry must be trashed before permanent delete: {entry.id}"
            )
        subtree = await self._metadata.descendants(session, entry.owner_id, entry.id)
        doomed = [entry, *subtree]
        for row in reversed(doomed):
            await session.delete(row)
        await session.flush()
        return doomed
