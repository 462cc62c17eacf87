"""MetadataService — entry lookup, info conversion, listings, and usage."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import func, or_
from sqlmodel import select

from tmacloud.config import MAX_TREE_DEPTH
from tmacloud.models.files import EntryType, FileEntry, StorageKind

from .exceptions import InvariantViolationError
from .resolver import parent_clause
from .types import EntryInfo

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tmacloud.models.files import FileEntryBase

SORT_COLUMNS = ("name", "size", "modified_at", "created_at", "type")
LIKE_ESCAPE = "\\"


def _escape_like(term: str) -> str:
    for char in (LIKE_ESCAPE, "%", "_"):
        term = term.replace(char, LIKE_ESCAPE + char)
    return term


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def entry_to_info(entry: FileEntryBase) -> EntryInfo:
    """Convert a row to the caller-facing ``EntryInfo``."""
    return EntryInfo(
        id=entry.id,
        owner_id=entry.owner_id,
        name=entry.name,
        type=EntryType(entry.type).value,
        parent_id=entry.parent_id,
        size=entry.size or 0,
        mime_type=entry.mime_type,
        starred=entry.starred,
        backend=StorageKind(entry.backend).value,
        created_at=as_utc(entry.created_at),
        modified_at=as_utc(entry.modified_at),
        deleted_at=as_utc(entry.deleted_at),
    )


class MetadataService:
    """Stateless helpers for entry lookup and conversion.

    Receives the concrete entry model at construction so callers can
    use custom SQLModel subclasses.
    """

    def __init__(self, file_model: type[FileEntryBase] = FileEntry) -> None:
        self._file_model = file_model

    async def get_entry(
        self,
        session: AsyncSession,
        owner_id: str,
        entry_id: str,
        include_deleted: bool = False,
    ) -> FileEntryBase | None:
        """Get an entry by id, scoped to *owner_id*."""
        model = self._file_model
        query = select(model).where(model.id == entry_id, model.owner_id == owner_id)
        if not include_deleted:
            query = query.where(model.deleted_at.is_(None))  # type: ignore[union-attr]
        result = await session.execute(query)
        return result.scalar_one_or_none()

    async def get_entries(
        self, session: AsyncSession, owner_id: str, entry_ids: list[str]
    ) -> dict[str, FileEntryBase]:
        """Fetch several entries (trashed included) keyed by id."""
        if not entry_ids:
            return {}
        model = self._file_model
        result = await session.execute(
            select(model).where(model.id.in_(entry_ids), model.owner_id == owner_id)  # type: ignore[union-attr]
        )
        return {row.id: row for row in result.scalars().all()}

    # ------------------------------------------------------------------
    # Listings
    # ------------------------------------------------------------------

    async def list_children(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        *,
        sort_by: str = "name",
        order: str = "asc",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[FileEntryBase]:
        """Live children of *parent_id*, folders first, then by *sort_by*."""
        if sort_by not in SORT_COLUMNS:
            raise ValueError(f"Invalid sort column: {sort_by!r}")
        if order not in ("asc", "desc"):
            raise ValueError(f"Invalid sort order: {order!r}")

        model = self._file_model
        column = getattr(model, sort_by)
        query = (
            select(model)
            .where(
                model.owner_id == owner_id,
                parent_clause(model, parent_id),
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by(
                (model.type == EntryType.FILE),
                column.desc() if order == "desc" else column.asc(),
                model.id,
            )
            .offset(offset)
        )
        if limit is not None:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def list_starred(self, session: AsyncSession, owner_id: str) -> list[FileEntryBase]:
        model = self._file_model
        result = await session.execute(
            select(model)
            .where(
                model.owner_id == owner_id,
                model.starred.is_(True),  # type: ignore[union-attr]
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by(model.name)
        )
        return list(result.scalars().all())

    async def search(
        self, session: AsyncSession, owner_id: str, query: str, *, limit: int = 100
    ) -> list[FileEntryBase]:
        """Case-insensitive substring match on live entry names.

        ``%`` and ``_`` in *query* match literally. A blank query matches nothing.
        """
        term = query.strip().lower()
        if not term:
            return []
        model = self._file_model
        pattern = "%" + _escape_like(term) + "%"
        result = await session.execute(
            select(model)
            .where(
                model.owner_id == owner_id,
                func.lower(model.name).like(pattern, escape=LIKE_ESCAPE),
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by(model.name)
            .limit(limit)
        )
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Subtree walks
    # ------------------------------------------------------------------

    async def descendants(
        self,
        session: AsyncSession,
        owner_id: str,
        root_id: str,
        *,
        live_only: bool = False,
    ) -> list[FileEntryBase]:
        """Every descendant of *root_id*, parents before children.

        Walks one level per query and stops with ``InvariantViolationError``
        past ``MAX_TREE_DEPTH`` levels.
        """
        model = self._file_model
        found: list[FileEntryBase] = []
        frontier = [root_id]
        depth = 0
        while frontier:
            if depth >= MAX_TREE_DEPTH:
                raise InvariantViolationError(
                    f"Subtree of {root_id} exceeds {MAX_TREE_DEPTH} levels"
                )
            query = select(model).where(
                model.owner_id == owner_id,
                model.parent_id.in_(frontier),  # type: ignore[union-attr]
            )
            if live_only:
                query = query.where(model.deleted_at.is_(None))  # type: ignore[union-attr]
            result = await session.execute(query)
            level = list(result.scalars().all())
            found.extend(level)
            frontier = [row.id for row in level if row.type == EntryType.FOLDER]
            depth += 1
        return found

    async def folder_size(self, session: AsyncSession, owner_id: str, folder_id: str) -> int:
        """Total bytes of live files under *folder_id*."""
        rows = await self.descendants(session, owner_id, folder_id, live_only=True)
        return sum(row.size or 0 for row in rows if row.type == EntryType.FILE)

    async def used_bytes(self, session: AsyncSession, owner_id: str) -> int:
        """``SUM(size)`` of all the owner's files, trash included."""
        model = self._file_model
        result = await session.execute(
            select(func.coalesce(func.sum(model.size), 0)).where(
                model.owner_id == owner_id,
                model.type == EntryType.FILE,
            )
        )
        return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Custom-drive keys
    # ------------------------------------------------------------------

    async def detach_trashed_keys(self, session: AsyncSession, owner_id: str, key: str) -> int:
        """Clear the storage key of trashed custom rows at or below *key*.

        Only call this once nothing exists at *key* on the drive, so a
        live entry can take the path over. Detached rows can no longer be
        restored and release nothing when purged. Returns the row count.
        """
        model = self._file_model
        result = await session.execute(
            select(model).where(
                model.owner_id == owner_id,
                model.backend == StorageKind.CUSTOM,
                model.deleted_at.is_not(None),  # type: ignore[union-attr]
                or_(
                    model.storage_key == key,
                    model.storage_key.startswith(key + "/", autoescape=True),  # type: ignore[union-attr]
                ),
            )
        )
        rows = list(result.scalars().all())
        for row in rows:
            row.storage_key = None
        if rows:
            await session.flush()
        return len(rows)
