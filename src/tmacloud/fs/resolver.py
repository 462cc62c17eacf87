"""NameResolver — sibling-name availability, disambiguation, ancestry walks.

Side-effect free: every method is a lookup against the session's current
snapshot. Concurrent inserts that race past ``is_name_free`` are caught by
the partial unique index on ``files`` and surface as ``IntegrityError``.
"""

from __future__ import annotations

import posixpath
from typing import TYPE_CHECKING

from sqlmodel import select

from tmacloud.config import MAX_NAME_SUFFIX, MAX_TREE_DEPTH
from tmacloud.models.files import EntryType, FileEntry

from .exceptions import InvariantViolationError, NameConflictError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from sqlalchemy import ColumnElement
    from sqlalchemy.ext.asyncio import AsyncSession

    from tmacloud.models.files import FileEntryBase

    PhysicalExists = Callable[[str], Awaitable[bool]]

MAX_NAME_LENGTH = 255


# =============================================================================
# Pure helpers
# =============================================================================


def validate_name(name: str) -> str:
    """Return *name* stripped of surrounding whitespace, or raise ``ValueError``."""
    cleaned = name.strip()
    if not cleaned:
        raise ValueError("Name must not be empty")
    if cleaned in (".", ".."):
        raise ValueError(f"Reserved name: {cleaned!r}")
    if len(cleaned) > MAX_NAME_LENGTH:
        raise ValueError(f"Name too long ({len(cleaned)} > {MAX_NAME_LENGTH} chars)")
    if any(ch in cleaned for ch in ("/", "\\")) or any(ord(ch) < 32 for ch in cleaned):
        raise ValueError(f"Name contains invalid characters: {cleaned!r}")
    return cleaned


def disambiguate_name(name: str, n: int, entry_type: EntryType) -> str:
    """``report.pdf`` -> ``report (n).pdf``; folders -> ``name (n)``."""
    match entry_type:
        case EntryType.FOLDER:
            return f"{name} ({n})"
        case EntryType.FILE:
            stem, ext = posixpath.splitext(name)
            return f"{stem} ({n}){ext}"


def parent_clause(model: type[FileEntryBase], parent_id: str | None) -> ColumnElement[bool]:
    """``parent_id IS NULL`` for root level, equality otherwise."""
    if parent_id is None:
        return model.parent_id.is_(None)  # type: ignore[union-attr]
    return model.parent_id == parent_id


# =============================================================================
# Resolver
# =============================================================================


class NameResolver:
    """Lookups against the tree that every mutation consults first.

    Receives the concrete entry model at construction so callers can use
    custom SQLModel subclasses.
    """

    def __init__(self, file_model: type[FileEntryBase] = FileEntry) -> None:
        self._file_model = file_model

    async def sibling_names(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        entry_type: EntryType,
        *,
        exclude_id: str | None = None,
    ) -> set[str]:
        """Names of live same-type entries under *parent_id*."""
        model = self._file_model
        query = select(model.name).where(
            model.owner_id == owner_id,
            parent_clause(model, parent_id),
            model.type == entry_type,
            model.deleted_at.is_(None),  # type: ignore[union-attr]
        )
        if exclude_id is not None:
            query = query.where(model.id != exclude_id)
        result = await session.execute(query)
        return set(result.scalars().all())

    async def is_name_free(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        name: str,
        entry_type: EntryType,
        *,
        exclude_id: str | None = None,
    ) -> bool:
        taken = await self.sibling_names(
            session, owner_id, parent_id, entry_type, exclude_id=exclude_id
        )
        return name not in taken

    async def resolve_name(
        self,
        session: AsyncSession,
        owner_id: str,
        parent_id: str | None,
        name: str,
        entry_type: EntryType,
        *,
        auto_rename: bool,
        exclude_id: str | None = None,
        physical_exists: PhysicalExists | None = None,
    ) -> str:
        """Return a free name for a new or relocated entry.

        With *auto_rename* a taken name is replaced by the first free
        ``name (n)`` variant; otherwise ``NameConflictError`` is raised.
        *physical_exists* additionally rejects names already present on a
        custom drive but not yet known to the database.
        """
        taken = await self.sibling_names(
            session, owner_id, parent_id, entry_type, exclude_id=exclude_id
        )

        async def _free(candidate: str) -> bool:
            if candidate in taken:
                return False
            return physical_exists is None or not await physical_exists(candidate)

        if await _free(name):
            return name
        if not auto_rename:
            raise NameConflictError(f"An entry named {name!r} already exists here")

        for n in range(1, MAX_NAME_SUFFIX + 1):
            candidate = disambiguate_name(name, n, entry_type)
            if await _free(candidate):
                return candidate
        raise NameConflictError(f"No free name found for {name!r}")

    async def ancestors(
        self, session: AsyncSession, owner_id: str, entry_id: str
    ) -> list[str]:
        """Ids from *entry_id*'s parent up to the root, nearest first.

        Raises ``InvariantViolationError`` on a cycle or a chain deeper
        than ``MAX_TREE_DEPTH``.
        """
        model = self._file_model
        chain: list[str] = []
        seen = {entry_id}
        current: str | None = entry_id
        while current is not None:
            result = await session.execute(
                select(model.parent_id).where(model.id == current, model.owner_id == owner_id)
            )
            parent_id = result.scalar_one_or_none()
            if parent_id is None:
                break
            if parent_id in seen:
                raise InvariantViolationError(f"Cycle detected above entry {entry_id}")
            if len(chain) >= MAX_TREE_DEPTH:
                raise InvariantViolationError(
                    f"Ancestry of {entry_id} exceeds {MAX_TREE_DEPTH} levels"
                )
            seen.add(parent_id)
            chain.append(parent_id)
            current = parent_id
        return chain

    async def is_descendant_or_self(
        self,
        session: AsyncSession,
        owner_id: str,
        candidate_id: str,
        ancestor_id: str,
    ) -> bool:
        if candidate_id == ancestor_id:
            return True
        return ancestor_id in await self.ancestors(session, owner_id, candidate_id)
