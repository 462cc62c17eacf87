"""Folder archives — stream a folder subtree as a ZIP.

The archive is produced while it is read: each stored object is copied
into the ZIP chunk by chunk and the compressed bytes are handed to the
caller as soon as they exist, so nothing is buffered whole.
"""

from __future__ import annotations

import io
import logging
import zipfile
from dataclasses import dataclass
from typing import TYPE_CHECKING

from tmacloud.models.files import EntryType

from .metadata import as_utc

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Iterable

    from tmacloud.models.files import FileEntryBase

    from .protocol import ByteStore

logger = logging.getLogger(__name__)

ARCHIVE_MIME_TYPE = "application/zip"


@dataclass(frozen=True)
class ArchiveMember:
    """One folder or file inside an archive.

    Folders have no store. *modified* is the ZIP date_time of a file.
    """

    path: str
    store: ByteStore | None = None
    key: str | None = None
    size: int = 0
    modified: tuple[int, int, int, int, int, int] | None = None

    @property
    def is_dir(self) -> bool:
        return self.store is None


class _ChunkSink(io.RawIOBase):
    """Write-only, unseekable buffer drained between archive writes."""

    def __init__(self) -> None:
        self._buffer = bytearray()

    def writable(self) -> bool:
        return True

    def write(self, data) -> int:  # type: ignore[override]
        self._buffer.extend(data)
        return len(data)

    def take(self) -> bytes:
        data = bytes(self._buffer)
        self._buffer.clear()
        return data


def folder_members(
    root: FileEntryBase,
    descendants: Iterable[FileEntryBase],
    store_for: Callable[[FileEntryBase], ByteStore],
) -> list[ArchiveMember]:
    """Archive layout for *root* and its *descendants* (parents before children).

    Paths start with the root folder's name. Rows whose parent is not part
    of the walk are left out, so passing only live descendants drops
    everything below a trashed folder.
    """
    paths = {root.id: root.name}
    members = [ArchiveMember(root.name)]
    for row in descendants:
        base = paths.get(row.parent_id or "")
        if base is None:
            continue
        path = f"{base}/{row.name}"
        if row.type == EntryType.FOLDER:
            paths[row.id] = path
            members.append(ArchiveMember(path))
        elif row.storage_key is not None:
            members.append(
                ArchiveMember(
                    path,
                    store=store_for(row),
                    key=row.storage_key,
                    size=row.size or 0,
                    modified=_zip_time(row),
                )
            )
    return members


def _zip_time(row: FileEntryBase) -> tuple[int, int, int, int, int, int] | None:
    modified = as_utc(row.modified_at)
    if modified is None or modified.year < 1980:
        return None
    return modified.timetuple()[:6]


async def stream_zip(members: Iterable[ArchiveMember]) -> AsyncIterator[bytes]:
    """Yield a ZIP archive of *members* in pieces.

    A file whose object has gone missing is logged and left out.
    """
    sink = _ChunkSink()
    with zipfile.ZipFile(sink, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for member in members:
            if member.is_dir:
                zf.mkdir(member.path)
            else:
                assert member.store is not None and member.key is not None
                if not await member.store.exists(member.key):
                    logger.warning("Archive skips %s: object %s is missing", member.path, member.key)
                    continue
                info = zipfile.ZipInfo(member.path)
                if member.modified is not None:
                    info.date_time = member.modified
                info.compress_type = zipfile.ZIP_DEFLATED
                force_zip64 = member.size >= zipfile.ZIP64_LIMIT
                with zf.open(info, "w", force_zip64=force_zip64) as dest:
                    async for chunk in member.store.read(member.key):
                        dest.write(chunk)
                        if data := sink.take():
                            yield data
            if data := sink.take():
                yield data
    if data := sink.take():
        yield data
