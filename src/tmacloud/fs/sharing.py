"""ShareLinkService — share token CRUD and scoped anonymous access.

Stateless service that receives the models at construction and a session
at call time, following the MetadataService pattern.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete
from sqlmodel import select

from tmacloud.models.files import EntryType, FileEntry
from tmacloud.models.shares import ShareLink, ShareLinkFile

from .exceptions import NotFoundError, ShareExpiredError
from .metadata import as_utc
from .resolver import parent_clause

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tmacloud.models.files import FileEntryBase
    from tmacloud.models.shares import ShareLinkBase

    from .resolver import NameResolver


class ShareLinkService:
    """Manages share links and resolves tokens to live entries.

    A token covers its primary entry plus any entries joined through
    ``share_link_files``. Folder access is re-verified against the live
    tree on every call by walking ancestors; nothing about a token's
    subtree is cached.
    """

    def __init__(
        self,
        resolver: NameResolver,
        file_model: type[FileEntryBase] = FileEntry,
        share_model: type[ShareLinkBase] = ShareLink,
    ) -> None:
        self._resolver = resolver
        self._file_model = file_model
        self._share_model = share_model

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def get_share_for(
        self, session: AsyncSession, owner_id: str, file_id: str
    ) -> ShareLinkBase | None:
        """The link whose primary entry is *file_id*, if any."""
        model = self._share_model
        result = await session.execute(
            select(model).where(model.file_id == file_id, model.user_id == owner_id)
        )
        return result.scalars().first()

    async def create_share(
        self,
        session: AsyncSession,
        owner_id: str,
        file_ids: list[str],
        *,
        expires_at: datetime | None = None,
    ) -> ShareLinkBase:
        """Share *file_ids* under one token. Flushes but does not commit.

        The first id is the primary entry. If it already has a link that
        token is reused (its expiry updated when *expires_at* is given)
        and the remaining ids are added to it.
        """
        if not file_ids:
            raise ValueError("At least one entry is required to create a share")
        primary = file_ids[0]

        share = await self.get_share_for(session, owner_id, primary)
        if share is None:
            share = self._share_model(file_id=primary, user_id=owner_id, expires_at=expires_at)
            session.add(share)
            await session.flush()
        elif expires_at is not None:
            share.expires_at = expires_at

        await self.add_files(session, share.id, file_ids)
        return share

    async def add_files(self, session: AsyncSession, share_id: str, file_ids: list[str]) -> int:
        """Join *file_ids* to the token; already-joined ids are skipped."""
        result = await session.execute(
            select(ShareLinkFile.file_id).where(ShareLinkFile.share_id == share_id)
        )
        existing = set(result.scalars().all())
        added = 0
        for file_id in dict.fromkeys(file_ids):
            if file_id in existing:
                continue
            session.add(ShareLinkFile(share_id=share_id, file_id=file_id))
            added += 1
        await session.flush()
        return added

    async def revoke(self, session: AsyncSession, owner_id: str, file_id: str) -> bool:
        """Delete the link whose primary entry is *file_id*. Returns True if found."""
        share = await self.get_share_for(session, owner_id, file_id)
        if share is None:
            return False
        await session.execute(delete(ShareLinkFile).where(ShareLinkFile.share_id == share.id))
        await session.delete(share)
        await session.flush()
        return True

    async def remove_files(
        self, session: AsyncSession, owner_id: str, file_ids: list[str]
    ) -> int:
        """Unjoin *file_ids* from the owner's links; links primary on them are revoked."""
        removed = 0
        for file_id in dict.fromkeys(file_ids):
            if await self.revoke(session, owner_id, file_id):
                removed += 1
        model = self._share_model
        owned = select(model.id).where(model.user_id == owner_id)
        result = await session.execute(
            delete(ShareLinkFile).where(
                ShareLinkFile.file_id.in_(file_ids),  # type: ignore[union-attr]
                ShareLinkFile.share_id.in_(owned),  # type: ignore[union-attr]
            )
        )
        await session.flush()
        return removed + (result.rowcount or 0)  # type: ignore[attr-defined]

    async def remove_for_entries(self, session: AsyncSession, file_ids: list[str]) -> int:
        """Drop every link and join row touching *file_ids* (permanent delete)."""
        if not file_ids:
            return 0
        model = self._share_model
        result = await session.execute(
            select(model.id).where(model.file_id.in_(file_ids))  # type: ignore[union-attr]
        )
        share_ids = list(result.scalars().all())
        await session.execute(
            delete(ShareLinkFile).where(
                ShareLinkFile.file_id.in_(file_ids)  # type: ignore[union-attr]
                | ShareLinkFile.share_id.in_(share_ids)  # type: ignore[union-attr]
            )
        )
        if share_ids:
            await session.execute(delete(model).where(model.id.in_(share_ids)))  # type: ignore[union-attr]
        return len(share_ids)

    async def purge_expired(self, session: AsyncSession, before: datetime) -> int:
        """Delete links whose ``expires_at`` is earlier than *before*."""
        model = self._share_model
        result = await session.execute(
            select(model.id).where(
                model.expires_at.is_not(None),  # type: ignore[union-attr]
                model.expires_at < before,  # type: ignore[operator]
            )
        )
        share_ids = list(result.scalars().all())
        if not share_ids:
            return 0
        await session.execute(
            delete(ShareLinkFile).where(ShareLinkFile.share_id.in_(share_ids))  # type: ignore[union-attr]
        )
        await session.execute(delete(model).where(model.id.in_(share_ids)))  # type: ignore[union-attr]
        return len(share_ids)

    async def shared_entry_ids(self, session: AsyncSession, owner_id: str) -> list[str]:
        """Ids of the owner's entries covered by a share link."""
        model = self._share_model
        result = await session.execute(
            select(ShareLinkFile.file_id)
            .join(model, model.id == ShareLinkFile.share_id)
            .where(model.user_id == owner_id)
        )
        return list(dict.fromkeys(result.scalars().all()))

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    async def resolve(
        self, session: AsyncSession, token: str, *, now: datetime | None = None
    ) -> tuple[ShareLinkBase, FileEntryBase]:
        """Map *token* to its live primary entry.

        Raises ``NotFoundError`` for unknown tokens or a trashed/deleted
        target, and ``ShareExpiredError`` once ``expires_at`` has passed.
        """
        share = await self._get_valid_share(session, token, now)
        entry = await self._live_entry(session, share.user_id, share.file_id)
        if entry is None:
            raise NotFoundError(f"Shared entry is no longer available: {token}")
        return share, entry

    async def shared_roots(
        self, session: AsyncSession, token: str, *, now: datetime | None = None
    ) -> list[FileEntryBase]:
        """Live entries directly covered by *token*."""
        share = await self._get_valid_share(session, token, now)
        ids = await self._covered_ids(session, share)
        model = self._file_model
        result = await session.execute(
            select(model)
            .where(
                model.id.in_(ids),  # type: ignore[union-attr]
                model.owner_id == share.user_id,
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by(model.name)
        )
        return list(result.scalars().all())

    async def list_children(
        self,
        session: AsyncSession,
        token: str,
        folder_id: str | None = None,
        *,
        now: datetime | None = None,
    ) -> list[FileEntryBase]:
        """Live direct children of *folder_id* when it lies inside the share.

        *folder_id* defaults to the token's primary entry.
        """
        share = await self._get_valid_share(session, token, now)
        folder = await self._scoped_entry(session, share, folder_id or share.file_id)
        if folder.type != EntryType.FOLDER:
            raise NotFoundError(f"Not a folder: {folder.id}")

        model = self._file_model
        result = await session.execute(
            select(model)
            .where(
                model.owner_id == share.user_id,
                parent_clause(model, folder.id),
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
            .order_by((model.type == EntryType.FILE), model.name)
        )
        return list(result.scalars().all())

    async def resolve_entry(
        self,
        session: AsyncSession,
        token: str,
        entry_id: str,
        *,
        now: datetime | None = None,
    ) -> FileEntryBase:
        """The live entry *entry_id* if *token* grants access to it."""
        share = await self._get_valid_share(session, token, now)
        return await self._scoped_entry(session, share, entry_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _get_valid_share(
        self, session: AsyncSession, token: str, now: datetime | None
    ) -> ShareLinkBase:
        model = self._share_model
        result = await session.execute(select(model).where(model.id == token))
        share = result.scalar_one_or_none()
        if share is None:
            raise NotFoundError(f"Share link not found: {token}")
        expires_at = as_utc(share.expires_at)
        if expires_at is not None and expires_at <= (now or datetime.now(UTC)):
            raise ShareExpiredError(f"Share link expired: {token}")
        return share

    async def _covered_ids(self, session: AsyncSession, share: ShareLinkBase) -> set[str]:
        result = await session.execute(
            select(ShareLinkFile.file_id).where(ShareLinkFile.share_id == share.id)
        )
        return {share.file_id, *result.scalars().all()}

    async def _live_entry(
        self, session: AsyncSession, owner_id: str, entry_id: str
    ) -> FileEntryBase | None:
        model = self._file_model
        result = await session.execute(
            select(model).where(
                model.id == entry_id,
                model.owner_id == owner_id,
                model.deleted_at.is_(None),  # type: ignore[union-attr]
            )
        )
        return result.scalar_one_or_none()

    async def _scoped_entry(
        self, session: AsyncSession, share: ShareLinkBase, entry_id: str
    ) -> FileEntryBase:
        """Load *entry_id* and verify it is a covered entry or lies beneath one."""
        entry = await self._live_entry(session, share.user_id, entry_id)
        if entry is None:
            raise NotFoundError(f"Entry not found in share: {entry_id}")
        covered = await self._covered_ids(session, share)
        if entry.id in covered:
            return entry
        chain = await self._resolver.ancestors(session, share.user_id, entry.id)
        for ancestor_id in chain:
            if ancestor_id in covered:
                return entry
        raise NotFoundError(f"Entry not found in share: {entry_id}")
