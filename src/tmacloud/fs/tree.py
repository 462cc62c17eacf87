"""FileTree — the transactional mutator over a user's virtual file tree.

Every single-entry operation runs in its own session (commit on success,
rollback on error) and raises a ``TreeError`` subclass. Bulk operations
run one transaction per entry and return a ``BulkResult``, except that a
move or copy creating a cycle rejects the whole request up front.

Physical ordering:

- create/upload/copy: write the object first, insert the row after, and
  discard the object if the transaction fails.
- permanent delete: delete rows and commit first, then release objects
  best-effort.
- rename/move on a custom drive: rename on disk first, update rows after,
  and rename back if the transaction fails.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import IntegrityError

from tmacloud.config import TreeConfig
from tmacloud.events import EventType, FileEvent
from tmacloud.models.files import EntryType, FileEntry, StorageKind
from tmacloud.models.users import User

from .archive import ARCHIVE_MIME_TYPE, folder_members, stream_zip
from .custom_drive import CustomDriveStore, custom_key
from .exceptions import (
    CycleRejectedError,
    InvariantViolationError,
    NameConflictError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageIOError,
    TreeError,
)
from .managed_store import managed_key
from .metadata import MetadataService, entry_to_info
from .operations import (
    discard_written,
    guess_mime_type,
    parent_key,
    physical_targets,
    purge_subtree,
    rekey_subtree,
    release_objects,
)
from .resolver import NameResolver, validate_name
from .sharing import ShareLinkService
from .trash import TrashService
from .types import BulkResult, ItemResult, StorageUsage

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterable, AsyncIterator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from tmacloud.events import EventBus
    from tmacloud.models.files import FileEntryBase
    from tmacloud.settings import SettingsCache

    from .managed_store import ManagedStore
    from .operations import PhysicalTarget
    from .protocol import ByteStore
    from .resolver import PhysicalExists
    from .types import EntryInfo

logger = logging.getLogger(__name__)


class FileTree:
    """Create, upload, rename, move, copy, trash, restore, and delete entries.

    Owners whose ``users`` row has a custom drive enabled store their
    entries on that drive; everyone else uses *managed_store*. The
    ``owner_id`` passed to every method is trusted.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        managed_store: ManagedStore,
        *,
        config: TreeConfig | None = None,
        event_bus: EventBus | None = None,
        settings_cache: SettingsCache | None = None,
        file_model: type[FileEntryBase] = FileEntry,
    ) -> None:
        self._session_factory = session_factory
        self._managed = managed_store
        self.config = config or TreeConfig(managed_root=managed_store.root)
        self._event_bus = event_bus
        self._settings = settings_cache
        self._file_model = file_model

        self.resolver = NameResolver(file_model)
        self.metadata = MetadataService(file_model)
        self.trash_service = TrashService(self.metadata, self.resolver, file_model)
        self.sharing = ShareLinkService(self.resolver, file_model)

        self._drives: dict[str, CustomDriveStore] = {}

    @property
    def managed_store(self) -> ManagedStore:
        return self._managed

    @property
    def file_model(self) -> type[FileEntryBase]:
        return self._file_model

    # =========================================================================
    # Session & Event Plumbing
    # =========================================================================

    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession]:
        """Per-operation session: commit on success, roll back on error."""
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    def _emit(
        self,
        event_type: EventType,
        resource_id: str | None,
        owner_id: str,
        **metadata: Any,
    ) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(
                FileEvent(event_type, resource_id, owner_id, metadata=metadata)
            )

    # =========================================================================
    # Storage Resolution
    # =========================================================================

    def drive_store(self, path: str) -> CustomDriveStore:
        """Store for a custom drive path, constructed once per path."""
        store = self._drives.get(path)
        if store is None:
            store = CustomDriveStore(path)
            self._drives[path] = store
        return store

    def forget_drive(self, path: str) -> None:
        self._drives.pop(path, None)

    async def drive_for(self, session: AsyncSession, owner_id: str) -> CustomDriveStore | None:
        """The owner's custom drive, or None when they use managed storage."""
        user = await session.get(User, owner_id)
        if user is None or not user.custom_drive_enabled or not user.custom_drive_path:
            return None
        try:
            return self.drive_store(user.custom_drive_path)
        except NotFoundError as e:
            raise StorageIOError(f"Custom drive unavailable for {owner_id}: {e}") from e

    def _store_of(self, entry: FileEntryBase, drive: CustomDriveStore | None) -> ByteStore:
        match StorageKind(entry.backend):
            case StorageKind.MANAGED:
                return self._managed
            case StorageKind.CUSTOM:
                if drive is None:
                    raise StorageIOError(f"Custom drive unavailable for entry {entry.id}")
                return drive

    def _physical_exists(
        self,
        session: AsyncSession,
        owner_id: str,
        drive: CustomDriveStore | None,
        folder: FileEntryBase | None,
        *,
        own_key: str | None = None,
    ) -> PhysicalExists | None:
        """Name check against the drive for names the scanner has not seen yet.

        A free path may still be held by trashed rows whose object is gone;
        those rows are detached so the path can be reused.
        """
        if drive is None:
            return None
        base = folder.storage_key if folder is not None else None

        async def _exists(name: str) -> bool:
            key = custom_key(base, name)
            if key == own_key:
                return False
            if await drive.exists(key):
                return True
            await self.metadata.detach_trashed_keys(session, owner_id, key)
            return False

        return _exists

    # =========================================================================
    # Lookups & Limits
    # =========================================================================

    async def _get_owned(
        self,
        session: AsyncSession,
        owner_id: str,
        entry_id: str,
        *,
        include_deleted: bool = False,
    ) -> FileEntryBase:
        entry = await session.get(self._file_model, entry_id)
        if entry is None:
            raise NotFoundError(f"Entry not found: {entry_id}")
        if entry.owner_id != owner_id:
            raise PermissionDeniedError(f"Entry {entry_id} belongs to another user")
        if entry.deleted_at is not None and not include_deleted:
            raise NotFoundError(f"Entry is in trash: {entry_id}")
        return entry

    async def _require_folder(
        self, session: AsyncSession, owner_id: str, folder_id: str | None
    ) -> FileEntryBase | None:
        """Live destination folder, or None for the root level."""
        if folder_id is None:
            return None
        folder = await self._get_owned(session, owner_id, folder_id)
        if folder.type != EntryType.FOLDER:
            raise InvariantViolationError(f"Destination is not a folder: {folder_id}")
        return folder

    async def _max_upload_size(self) -> int:
        if self._settings is None:
            return self.config.default_max_upload_size
        return (await self._settings.get()).max_upload_size_bytes

    async def _usage(self, session: AsyncSession, owner_id: str, store: ByteStore) -> StorageUsage:
        """Live usage against the user's limit, or the disk capacity if unset."""
        user = await session.get(User, owner_id)
        if user is not None and user.storage_limit is not None:
            limit = user.storage_limit
        else:
            limit = await asyncio.to_thread(store.capacity)  # type: ignore[attr-defined]
        used = await self.metadata.used_bytes(session, owner_id)
        return StorageUsage(used=used, limit=limit)

    async def _write_allowance(
        self,
        session: AsyncSession,
        owner_id: str,
        store: ByteStore,
        size: int | None,
        *,
        max_upload: int | None,
        replacing: int = 0,
    ) -> int:
        """Bytes the next write may take; raises before any byte is written.

        *max_upload* is read from the settings cache before the session
        opens. *replacing* is the size of an object the write supersedes.
        """
        usage = await self._usage(session, owner_id, store)
        remaining = max(usage.limit - usage.used + replacing, 0)
        if size is not None:
            if max_upload is not None and size > max_upload:
                raise QuotaExceededError(
                    f"File size {size} exceeds the maximum upload size of {max_upload} bytes"
                )
            if size > remaining:
                raise QuotaExceededError(
                    f"Storage limit exceeded: {size} bytes requested, {remaining} available"
                )
        return remaining if max_upload is None else min(max_upload, remaining)

    # =========================================================================
    # Create
    # =========================================================================

    async def create_folder(
        self,
        owner_id: str,
        name: str,
        parent_id: str | None = None,
        *,
        auto_rename: bool = False,
    ) -> EntryInfo:
        """Insert a folder row; on a custom drive, create the directory first."""
        name = validate_name(name)
        written: list[PhysicalTarget] = []
        try:
            async with self.session_scope() as session:
                parent = await self._require_folder(session, owner_id, parent_id)
                drive = await self.drive_for(session, owner_id)
                final = await self.resolver.resolve_name(
                    session,
                    owner_id,
                    parent_id,
                    name,
                    EntryType.FOLDER,
                    auto_rename=auto_rename,
                    physical_exists=self._physical_exists(session, owner_id, drive, parent),
                )
                entry = self._file_model(
                    owner_id=owner_id, parent_id=parent_id, name=final, type=EntryType.FOLDER
                )
                if drive is not None:
                    key = custom_key(parent.storage_key if parent else None, final)
                    await drive.mkdir(key)
                    written.append((drive, key))
                    entry.backend = StorageKind.CUSTOM
                    entry.storage_key = key
                session.add(entry)
                await session.flush()
                info = entry_to_info(entry)
        except IntegrityError:
            await discard_written(written)
            raise NameConflictError(f"An entry named {name!r} already exists here") from None
        except BaseException:
            await discard_written(written)
            raise

        self._emit(EventType.FOLDER_CREATED, info.id, owner_id, name=info.name, parent_id=parent_id)
        return info

    async def upload(
        self,
        owner_id: str,
        name: str,
        data: bytes | AsyncIterable[bytes],
        parent_id: str | None = None,
        *,
        size: int | None = None,
        mime_type: str | None = None,
        auto_rename: bool = True,
    ) -> EntryInfo:
        """Store *data* as a new file.

        The declared *size* (or ``len(data)``) is checked against the
        max-upload-size setting and the owner's remaining allowance before
        anything is written; streamed data is additionally capped while it
        is written. The row is inserted only after the object exists.
        """
        name = validate_name(name)
        if size is None and isinstance(data, bytes):
            size = len(data)
        max_upload = await self._max_upload_size()
        written: list[PhysicalTarget] = []
        try:
            async with self.session_scope() as session:
                parent = await self._require_folder(session, owner_id, parent_id)
                drive = await self.drive_for(session, owner_id)
                store: ByteStore = drive if drive is not None else self._managed
                allowance = await self._write_allowance(
                    session, owner_id, store, size, max_upload=max_upload
                )
                final = await self.resolver.resolve_name(
                    session,
                    owner_id,
                    parent_id,
                    name,
                    EntryType.FILE,
                    auto_rename=auto_rename,
                    physical_exists=self._physical_exists(session, owner_id, drive, parent),
                )
                entry = self._file_model(
                    owner_id=owner_id,
                    parent_id=parent_id,
                    name=final,
                    type=EntryType.FILE,
                    mime_type=mime_type or guess_mime_type(final),
                )
                if drive is None:
                    key = managed_key(entry.id, final)
                else:
                    key = custom_key(parent.storage_key if parent else None, final)
                    entry.backend = StorageKind.CUSTOM

                stored = await store.write(
                    key, data, max_bytes=allowance, overwrite=drive is None
                )
                written.append((store, key))

                entry.storage_key = stored.key
                entry.size = stored.size
                entry.checksum = stored.checksum
                session.add(entry)
                await session.flush()
                info = entry_to_info(entry)
        except IntegrityError:
            await discard_written(written)
            raise NameConflictError(f"A file named {name!r} already exists here") from None
        except BaseException:
            await discard_written(written)
            raise

        self._emit(
            EventType.FILE_UPLOADED, info.id, owner_id, name=info.name, size=info.size
        )
        return info

    async def replace_content(
        self,
        owner_id: str,
        entry_id: str,
        data: bytes | AsyncIterable[bytes],
        *,
        size: int | None = None,
    ) -> EntryInfo:
        """Overwrite a file's bytes in place. Concurrent replaces: last writer wins."""
        if size is None and isinstance(data, bytes):
            size = len(data)
        max_upload = await self._max_upload_size()
        async with self.session_scope() as session:
            entry = await self._get_owned(session, owner_id, entry_id)
            if entry.type != EntryType.FILE or entry.storage_key is None:
                raise InvariantViolationError(f"Not a file: {entry_id}")
            drive = await self.drive_for(session, owner_id)
            store = self._store_of(entry, drive)
            allowance = await self._write_allowance(
                session, owner_id, store, size, max_upload=max_upload, replacing=entry.size or 0
            )
            stored = await store.write(entry.storage_key, data, max_bytes=allowance)
            entry.size = stored.size
            entry.checksum = stored.checksum
            entry.modified_at = datetime.now(UTC)
            await session.flush()
            info = entry_to_info(entry)

        self._emit(EventType.CONTENT_REPLACED, info.id, owner_id, size=info.size)
        return info

    # =========================================================================
    # Rename / Move
    # =========================================================================

    async def rename(self, owner_id: str, entry_id: str, new_name: str) -> EntryInfo:
        """Change an entry's display name.

        Managed entries only change their row. Custom-drive entries are
        renamed on disk first and renamed back if the update fails.
        """
        new_name = validate_name(new_name)
        moved: list[tuple[CustomDriveStore, str, str]] = []
        try:
            async with self.session_scope() as session:
                entry = await self._get_owned(session, owner_id, entry_id)
                old_name = entry.name
                if new_name != old_name:
                    drive = await self.drive_for(session, owner_id)
                    parent = await self._require_folder(session, owner_id, entry.parent_id)
                    final = await self.resolver.resolve_name(
                        session,
                        owner_id,
                        entry.parent_id,
                        new_name,
                        EntryType(entry.type),
                        auto_rename=False,
                        exclude_id=entry.id,
                        physical_exists=self._physical_exists(
                            session, owner_id, drive, parent, own_key=entry.storage_key
                        ),
                    )
                    if entry.backend == StorageKind.CUSTOM and entry.storage_key is not None:
                        store = self._store_of(entry, drive)
                        assert isinstance(store, CustomDriveStore)
                        old_key = entry.storage_key
                        new_key = custom_key(parent_key(old_key), final)
                        await store.move(old_key, new_key)
                        moved.append((store, new_key, old_key))
                        await rekey_subtree(
                            session, entry, old_key, new_key, metadata=self.metadata
                        )
                    entry.name = final
                    entry.modified_at = datetime.now(UTC)
                    await session.flush()
                info = entry_to_info(entry)
        except IntegrityError:
            await self._undo_moves(moved)
            raise NameConflictError(f"An entry named {new_name!r} already exists here") from None
        except BaseException:
            await self._undo_moves(moved)
            raise

        if info.name != old_name:
            self._emit(EventType.ENTRY_RENAMED, info.id, owner_id, old_name=old_name, name=info.name)
        return info

    async def move(
        self, owner_id: str, entry_ids: list[str], parent_id: str | None
    ) -> BulkResult:
        """Reparent entries under *parent_id* (None = root level).

        Raises ``CycleRejectedError`` without changing anything if any
        entry is the destination or one of its ancestors. Other failures
        are reported per entry.
        """
        await self._reject_cycles(owner_id, entry_ids, parent_id)
        result = BulkResult()
        for entry_id in entry_ids:
            try:
                info = await self._move_one(owner_id, entry_id, parent_id)
            except CycleRejectedError:
                raise
            except TreeError as e:
                result.items.append(ItemResult(entry_id, False, str(e), error_kind=e.kind))
            else:
                result.items.append(ItemResult(entry_id, True, "Moved", entry=info))
        return result

    async def _reject_cycles(
        self, owner_id: str, entry_ids: list[str], parent_id: str | None
    ) -> None:
        if parent_id is None:
            return
        async with self.session_scope() as session:
            await self._require_folder(session, owner_id, parent_id)
            chain = {parent_id, *await self.resolver.ancestors(session, owner_id, parent_id)}
        cyclic = [entry_id for entry_id in entry_ids if entry_id in chain]
        if cyclic:
            raise CycleRejectedError(
                f"Cannot place {', '.join(cyclic)} inside itself or its own descendant"
            )

    async def _move_one(self, owner_id: str, entry_id: str, parent_id: str | None) -> EntryInfo:
        moved: list[tuple[CustomDriveStore, str, str]] = []
        try:
            async with self.session_scope() as session:
                entry = await self._get_owned(session, owner_id, entry_id)
                dest = await self._require_folder(session, owner_id, parent_id)
                if dest is not None and await self.resolver.is_descendant_or_self(
                    session, owner_id, dest.id, entry.id
                ):
                    raise CycleRejectedError(f"Cannot move {entry_id} into its own subtree")
                if entry.parent_id == parent_id:
                    return entry_to_info(entry)
                if dest is not None and dest.backend != entry.backend:
                    raise InvariantViolationError("Cannot move entries between storage backends")

                drive = await self.drive_for(session, owner_id)
                final = await self.resolver.resolve_name(
                    session,
                    owner_id,
                    parent_id,
                    entry.name,
                    EntryType(entry.type),
                    auto_rename=False,
                    exclude_id=entry.id,
                    physical_exists=self._physical_exists(session, owner_id, drive, dest),
                )
                if entry.backend == StorageKind.CUSTOM and entry.storage_key is not None:
                    store = self._store_of(entry, drive)
                    assert isinstance(store, CustomDriveStore)
                    old_key = entry.storage_key
                    new_key = custom_key(dest.storage_key if dest else None, final)
                    await store.move(old_key, new_key)
                    moved.append((store, new_key, old_key))
                    await rekey_subtree(session, entry, old_key, new_key, metadata=self.metadata)

                old_parent = entry.parent_id
                entry.parent_id = parent_id
                entry.modified_at = datetime.now(UTC)
                await session.flush()
                info = entry_to_info(entry)
        except IntegrityError:
            await self._undo_moves(moved)
            raise NameConflictError(f"Name already taken in destination: {entry_id}") from None
        except BaseException:
            await self._undo_moves(moved)
            raise

        self._emit(
            EventType.ENTRY_MOVED, info.id, owner_id, old_parent_id=old_parent, parent_id=parent_id
        )
        return info

    async def _undo_moves(self, moved: list[tuple[CustomDriveStore, str, str]]) -> None:
        for store, new_key, old_key in reversed(moved):
            try:
                await store.move(new_key, old_key)
            except TreeError:
                logger.error(
                    "Could not revert rename %s -> %s on %r", new_key, old_key, store, exc_info=True
                )
        moved.clear()

    # =========================================================================
    # Copy
    # =========================================================================

    async def copy(
        self, owner_id: str, entry_ids: list[str], parent_id: str | None
    ) -> BulkResult:
        """Duplicate entries (recursively for folders) under *parent_id*.

        Every copied file gets its own physical object. Names taken at the
        destination are disambiguated.
        """
        await self._reject_cycles(owner_id, entry_ids, parent_id)
        result = BulkResult()
        for entry_id in entry_ids:
            try:
                info = await self._copy_one(owner_id, entry_id, parent_id)
            except CycleRejectedError:
                raise
            except TreeError as e:
                result.items.append(ItemResult(entry_id, False, str(e), error_kind=e.kind))
            else:
                result.items.append(ItemResult(entry_id, True, "Copied", entry=info))
        return result

    async def _copy_one(self, owner_id: str, entry_id: str, parent_id: str | None) -> EntryInfo:
        written: list[PhysicalTarget] = []
        model = self._file_model
        try:
            async with self.session_scope() as session:
                source = await self._get_owned(session, owner_id, entry_id)
                dest = await self._require_folder(session, owner_id, parent_id)
                if dest is not None and await self.resolver.is_descendant_or_self(
                    session, owner_id, dest.id, source.id
                ):
                    raise CycleRejectedError(f"Cannot copy {entry_id} into its own subtree")

                drive = await self.drive_for(session, owner_id)
                src_store = self._store_of(source, drive)
                dest_store: ByteStore = drive if drive is not None else self._managed
                if dest is not None and dest.backend != source.backend:
                    raise InvariantViolationError("Cannot copy entries between storage backends")

                subtree = [
                    source,
                    *await self.metadata.descendants(session, owner_id, source.id, live_only=True),
                ]
                total = sum(row.size or 0 for row in subtree if row.type == EntryType.FILE)
                await self._write_allowance(session, owner_id, dest_store, total, max_upload=None)

                top_name = await self.resolver.resolve_name(
                    session,
                    owner_id,
                    parent_id,
                    source.name,
                    EntryType(source.type),
                    auto_rename=True,
                    physical_exists=self._physical_exists(session, owner_id, drive, dest),
                )

                new_ids: dict[str, str] = {}
                new_keys: dict[str, str | None] = {}
                top: FileEntryBase | None = None
                for row in subtree:
                    if row is source:
                        new_parent, name = parent_id, top_name
                        base_key = dest.storage_key if dest is not None else None
                    else:
                        assert row.parent_id is not None
                        new_parent, name = new_ids[row.parent_id], row.name
                        base_key = new_keys[row.parent_id]

                    clone = model(
                        owner_id=owner_id,
                        parent_id=new_parent,
                        name=name,
                        type=row.type,
                        mime_type=row.mime_type,
                        backend=StorageKind.CUSTOM if drive is not None else StorageKind.MANAGED,
                    )
                    key: str | None = None
                    match EntryType(row.type):
                        case EntryType.FOLDER:
                            if drive is not None:
                                key = custom_key(base_key, name)
                                await drive.mkdir(key)
                                written.append((drive, key))
                        case EntryType.FILE:
                            if row.storage_key is None:
                                raise NotFoundError(f"File has no stored object: {row.id}")
                            key = (
                                custom_key(base_key, name)
                                if drive is not None
                                else managed_key(clone.id, name)
                            )
                            stored = await src_store.copy(row.storage_key, key)
                            written.append((dest_store, key))
                            clone.size = stored.size
                            clone.checksum = stored.checksum
                    clone.storage_key = key
                    new_ids[row.id] = clone.id
                    new_keys[row.id] = key
                    session.add(clone)
                    if top is None:
                        top = clone
                await session.flush()
                assert top is not None
                info = entry_to_info(top)
        except IntegrityError:
            await discard_written(written)
            raise NameConflictError(f"Name already taken in destination: {entry_id}") from None
        except BaseException:
            await discard_written(written)
            raise

        self._emit(
            EventType.ENTRY_COPIED, info.id, owner_id, source_id=entry_id, parent_id=parent_id
        )
        return info

    # =========================================================================
    # Trash / Restore / Permanent delete
    # =========================================================================

    async def trash(self, owner_id: str, entry_ids: list[str]) -> BulkResult:
        """Move entries (and their live subtrees) to the trash."""
        return await self._per_item(owner_id, entry_ids, self._trash_one, "Moved to trash")

    async def _trash_one(self, owner_id: str, entry_id: str) -> EntryInfo:
        async with self.session_scope() as session:
            entry = await self._get_owned(session, owner_id, entry_id, include_deleted=True)
            stamped = await self.trash_service.trash_entry(session, entry)
            info = entry_to_info(entry)
        if stamped:
            self._emit(EventType.ENTRY_TRASHED, entry_id, owner_id, count=len(stamped))
        return info

    async def restore(self, owner_id: str, entry_ids: list[str]) -> BulkResult:
        """Bring trashed entries back, to the root level if their parent is gone."""
        return await self._per_item(owner_id, entry_ids, self._restore_one, "Restored")

    async def _restore_one(self, owner_id: str, entry_id: str) -> EntryInfo:
        moved: list[tuple[CustomDriveStore, str, str]] = []
        try:
            async with self.session_scope() as session:
                entry = await self._get_owned(session, owner_id, entry_id, include_deleted=True)
                physical_exists = None
                drive = None
                if entry.backend == StorageKind.CUSTOM:
                    if entry.storage_key is None:
                        raise NotFoundError(f"Stored object of {entry_id} no longer exists")
                    drive = await self.drive_for(session, owner_id)
                    target = await self.trash_service.restore_target(session, entry)
                    folder = await self._require_folder(session, owner_id, target)
                    physical_exists = self._physical_exists(
                        session, owner_id, drive, folder, own_key=entry.storage_key
                    )
                old_key = entry.storage_key
                revived = await self.trash_service.restore_entry(
                    session, entry, physical_exists=physical_exists
                )
                if drive is not None and old_key is not None:
                    folder = await self._require_folder(session, owner_id, entry.parent_id)
                    new_key = custom_key(folder.storage_key if folder else None, entry.name)
                    if new_key != old_key:
                        await drive.move(old_key, new_key)
                        moved.append((drive, new_key, old_key))
                        await rekey_subtree(
                            session, entry, old_key, new_key, metadata=self.metadata
                        )
                        await session.flush()
                info = entry_to_info(entry)
        except IntegrityError:
            await self._undo_moves(moved)
            raise NameConflictError(f"Cannot restore {entry_id}: name taken") from None
        except BaseException:
            await self._undo_moves(moved)
            raise

        self._emit(
            EventType.ENTRY_RESTORED, entry_id, owner_id, parent_id=info.parent_id, count=len(revived)
        )
        return info

    async def delete_permanently(self, owner_id: str, entry_ids: list[str]) -> BulkResult:
        """Irreversibly delete trashed entries, their subtrees, and their objects."""
        return await self._per_item(owner_id, entry_ids, self._purge_one, "Deleted permanently")

    async def _purge_one(self, owner_id: str, entry_id: str) -> None:
        async with self.session_scope() as session:
            entry = await self._get_owned(session, owner_id, entry_id, include_deleted=True)
            doomed = await purge_subtree(
                session, entry, trash=self.trash_service, sharing=self.sharing
            )
            drive = None
            if any(row.backend == StorageKind.CUSTOM for row in doomed):
                try:
                    drive = await self.drive_for(session, owner_id)
                except StorageIOError:
                    logger.warning("Custom drive of %s unavailable during purge", owner_id)
            targets = physical_targets(doomed, managed=self._managed, drive=drive)

        failures = await release_objects(targets)
        if failures:
            logger.warning(
                "Purged %s; %d physical object(s) left for the orphan sweep", entry_id, failures
            )
        self._emit(EventType.ENTRY_PURGED, entry_id, owner_id, count=len(doomed))

    async def empty_trash(self, owner_id: str) -> BulkResult:
        """Permanently delete everything in the owner's trash."""
        async with self.session_scope() as session:
            roots = [row.id for row in await self.trash_service.list_trash(session, owner_id)]
            trashed = await self.trash_service.list_trash_ids(session, owner_id)

        # Batch roots first; anything left afterwards lost its root separately.
        result = BulkResult()
        for entry_id in dict.fromkeys([*roots, *trashed]):
            try:
                await self._purge_one(owner_id, entry_id)
            except NotFoundError:
                continue  # went with an earlier subtree
            except TreeError as e:
                result.items.append(ItemResult(entry_id, False, str(e), error_kind=e.kind))
            else:
                result.items.append(ItemResult(entry_id, True, "Deleted permanently"))

        self._emit(EventType.TRASH_EMPTIED, None, owner_id, count=len(result.succeeded))
        return result

    async def _per_item(
        self,
        owner_id: str,
        entry_ids: list[str],
        operation: Callable[[str, str], Awaitable[EntryInfo | None]],
        message: str,
    ) -> BulkResult:
        result = BulkResult()
        for entry_id in entry_ids:
            try:
                info = await operation(owner_id, entry_id)
            except TreeError as e:
                result.items.append(ItemResult(entry_id, False, str(e), error_kind=e.kind))
            else:
                result.items.append(ItemResult(entry_id, True, message, entry=info))
        return result

    # =========================================================================
    # Stars
    # =========================================================================

    async def set_starred(self, owner_id: str, entry_ids: list[str], starred: bool) -> BulkResult:
        async def _star(owner: str, entry_id: str) -> EntryInfo:
            async with self.session_scope() as session:
                entry = await self._get_owned(session, owner, entry_id)
                entry.starred = starred
                await session.flush()
                info = entry_to_info(entry)
            self._emit(EventType.STARRED_CHANGED, entry_id, owner, starred=starred)
            return info

        return await self._per_item(owner_id, entry_ids, _star, "Updated")

    # =========================================================================
    # Read Side
    # =========================================================================

    async def get(self, owner_id: str, entry_id: str, *, include_deleted: bool = False) -> EntryInfo:
        async with self.session_scope() as session:
            entry = await self._get_owned(
                session, owner_id, entry_id, include_deleted=include_deleted
            )
            return entry_to_info(entry)

    async def list_children(
        self,
        owner_id: str,
        parent_id: str | None = None,
        *,
        sort_by: str = "name",
        order: str = "asc",
        limit: int | None = None,
        offset: int = 0,
    ) -> list[EntryInfo]:
        async with self.session_scope() as session:
            await self._require_folder(session, owner_id, parent_id)
            rows = await self.metadata.list_children(
                session, owner_id, parent_id, sort_by=sort_by, order=order, limit=limit, offset=offset
            )
            return [entry_to_info(row) for row in rows]

    async def list_starred(self, owner_id: str) -> list[EntryInfo]:
        async with self.session_scope() as session:
            return [entry_to_info(row) for row in await self.metadata.list_starred(session, owner_id)]

    async def list_trash(self, owner_id: str) -> list[EntryInfo]:
        async with self.session_scope() as session:
            return [
                entry_to_info(row) for row in await self.trash_service.list_trash(session, owner_id)
            ]

    async def list_shared(self, owner_id: str) -> list[EntryInfo]:
        """Live entries of the owner covered by a share link."""
        async with self.session_scope() as session:
            ids = await self.sharing.shared_entry_ids(session, owner_id)
            rows = await self.metadata.get_entries(session, owner_id, ids)
            return [entry_to_info(rows[i]) for i in ids if i in rows and rows[i].deleted_at is None]

    async def search(self, owner_id: str, query: str, *, limit: int = 100) -> list[EntryInfo]:
        async with self.session_scope() as session:
            rows = await self.metadata.search(session, owner_id, query, limit=limit)
            return [entry_to_info(row) for row in rows]

    async def folder_size(self, owner_id: str, folder_id: str) -> int:
        async with self.session_scope() as session:
            await self._require_folder(session, owner_id, folder_id)
            return await self.metadata.folder_size(session, owner_id, folder_id)

    async def storage_usage(self, owner_id: str) -> StorageUsage:
        async with self.session_scope() as session:
            drive = await self.drive_for(session, owner_id)
            return await self._usage(session, owner_id, drive or self._managed)

    async def open_download(
        self, owner_id: str, entry_id: str
    ) -> tuple[EntryInfo, AsyncIterator[bytes]]:
        """Metadata and a byte stream for a live file or folder.

        A folder is streamed as a ZIP of its live subtree, rooted at the
        folder's name; its ``mime_type`` is reported as ``application/zip``.
        """
        async with self.session_scope() as session:
            entry = await self._get_owned(session, owner_id, entry_id)
            drive = await self.drive_for(session, owner_id)
            info = entry_to_info(entry)
            if entry.type == EntryType.FOLDER:
                rows = await self.metadata.descendants(
                    session, owner_id, entry.id, live_only=True
                )
                members = folder_members(entry, rows, lambda row: self._store_of(row, drive))
                info.mime_type = ARCHIVE_MIME_TYPE
                return info, stream_zip(members)
            if entry.storage_key is None:
                raise InvariantViolationError(f"File has no stored object: {entry_id}")
            store = self._store_of(entry, drive)
            key = entry.storage_key
        if not await store.exists(key):
            logger.warning("Dangling row: %s has no object at %s", entry_id, key)
            raise NotFoundError(f"Stored object missing for {entry_id}")
        return info, store.read(key)

    # =========================================================================
    # Sharing
    # =========================================================================

    async def share(
        self,
        owner_id: str,
        entry_ids: list[str],
        *,
        expires_at: datetime | None = None,
    ) -> str:
        """Create (or extend) a share link over *entry_ids*; returns the token."""
        async with self.session_scope() as session:
            for entry_id in entry_ids:
                await self._get_owned(session, owner_id, entry_id)
            share = await self.sharing.create_share(
                session, owner_id, entry_ids, expires_at=expires_at
            )
            token = share.id
        self._emit(EventType.SHARE_CREATED, token, owner_id, entry_ids=list(entry_ids))
        return token

    async def unshare(self, owner_id: str, entry_id: str) -> bool:
        async with self.session_scope() as session:
            await self._get_owned(session, owner_id, entry_id, include_deleted=True)
            removed = await self.sharing.revoke(session, owner_id, entry_id)
        if removed:
            self._emit(EventType.SHARE_REVOKED, entry_id, owner_id)
        return removed

    async def resolve_share(self, token: str, *, now: datetime | None = None) -> EntryInfo:
        async with self.session_scope() as session:
            _share, entry = await self.sharing.resolve(session, token, now=now)
            return entry_to_info(entry)

    async def list_share_children(
        self, token: str, folder_id: str | None = None, *, now: datetime | None = None
    ) -> list[EntryInfo]:
        async with self.session_scope() as session:
            rows = await self.sharing.list_children(session, token, folder_id, now=now)
            return [entry_to_info(row) for row in rows]

    async def open_shared_download(
        self, token: str, entry_id: str, *, now: datetime | None = None
    ) -> tuple[EntryInfo, AsyncIterator[bytes]]:
        """Byte stream of a file reachable through *token*, or a ZIP of a folder."""
        async with self.session_scope() as session:
            entry = await self.sharing.resolve_entry(session, token, entry_id, now=now)
            owner_id = entry.owner_id
        return await self.open_download(owner_id, entry_id)
