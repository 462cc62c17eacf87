"""DiskStore — byte store rooted at a host directory.

Shared by ``ManagedStore`` and ``CustomDriveStore``. Keys are POSIX paths
relative to the root; ``_resolve_key`` keeps every access inside it.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, BinaryIO

from .exceptions import (
    NameConflictError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    StorageIOError,
)
from .types import ObjectStat, StoredObject

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator, Iterator

CHUNK_SIZE = 1024 * 1024  # 1MB
TEMP_PREFIX = ".tmp_"


@contextlib.contextmanager
def translate_os_errors(key: str) -> Iterator[None]:
    """Map ``OSError`` subclasses raised for *key* onto the tree taxonomy."""
    try:
        yield
    except FileNotFoundError:
        raise NotFoundError(f"Object not found: {key}") from None
    except FileExistsError:
        raise NameConflictError(f"Object already exists: {key}") from None
    except PermissionError as e:
        raise PermissionDeniedError(f"Permission denied: {key}: {e}") from e
    except OSError as e:
        raise StorageIOError(f"I/O error on {key}: {e}") from e


async def _iter_chunks(data: bytes | AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    if isinstance(data, bytes):
        yield data
        return
    async for chunk in data:
        yield chunk


def _as_stat(key: str, st: os.stat_result, is_dir: bool) -> ObjectStat:
    return ObjectStat(
        key=key,
        size=0 if is_dir else st.st_size,
        mtime=datetime.fromtimestamp(st.st_mtime, UTC),
        is_dir=is_dir,
    )


class DiskStore:
    """Local-disk implementation of the ``ByteStore`` protocol.

    Writes go to a ``.tmp_`` file in the destination directory and are
    renamed into place after fsync, so a reader never sees a partial
    object under its final key. A crashed or abandoned write leaves only
    the temp file, which ``iter_objects`` reports so the orphan sweep
    can reclaim it.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root).resolve()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({str(self.root)!r})"

    # =========================================================================
    # Key Resolution & Security
    # =========================================================================

    def _resolve_key(self, key: str) -> Path:
        """Resolve *key* to a path under ``root``.

        Rejects absolute keys, ``..`` segments, and symlinks anywhere on
        the way down.
        """
        rel = PurePosixPath(key)
        if not key or rel.is_absolute() or any(part in ("..", "") for part in rel.parts):
            raise PermissionDeniedError(f"Invalid storage key: {key!r}")

        current = self.root
        for part in rel.parts:
            current = current / part
            if current.is_symlink():
                raise PermissionDeniedError(
                    f"Symlinks not allowed: {key} contains symlink at "
                    f"{current.relative_to(self.root)}"
                )

        resolved = current.resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise PermissionDeniedError(
                f"Path traversal detected: {key} resolves outside store root"
            ) from None
        return resolved

    def _to_key(self, physical_path: Path) -> str:
        return physical_path.relative_to(self.root).as_posix()

    # =========================================================================
    # Read
    # =========================================================================

    async def read(self, key: str) -> AsyncIterator[bytes]:
        """Stream the object's bytes in ``CHUNK_SIZE`` pieces."""
        resolved = self._resolve_key(key)
        with translate_os_errors(key):
            fh = await asyncio.to_thread(resolved.open, "rb")
        try:
            while True:
                with translate_os_errors(key):
                    chunk = await asyncio.to_thread(fh.read, CHUNK_SIZE)
                if not chunk:
                    break
                yield chunk
        finally:
            await asyncio.to_thread(fh.close)

    async def read_bytes(self, key: str) -> bytes:
        resolved = self._resolve_key(key)
        with translate_os_errors(key):
            return await asyncio.to_thread(resolved.read_bytes)

    # =========================================================================
    # Write
    # =========================================================================

    async def write(
        self,
        key: str,
        data: bytes | AsyncIterable[bytes],
        *,
        max_bytes: int | None = None,
        overwrite: bool = True,
    ) -> StoredObject:
        """Atomically write *data* under *key*.

        Raises ``QuotaExceededError`` as soon as more than *max_bytes*
        have been received; the temp file is removed and nothing appears
        under *key*. With ``overwrite=False`` an existing object raises
        ``NameConflictError``.
        """
        resolved = self._resolve_key(key)

        def _open() -> tuple[BinaryIO, Path]:
            resolved.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(resolved.parent), prefix=TEMP_PREFIX)
            return os.fdopen(fd, "wb"), Path(tmp_name)

        def _finish() -> None:
            fh.flush()
            os.fsync(fh.fileno())
            fh.close()
            if not overwrite and resolved.exists():
                raise FileExistsError(key)
            tmp_path.replace(resolved)

        with translate_os_errors(key):
            fh, tmp_path = await asyncio.to_thread(_open)

        digest = hashlib.sha256()
        size = 0
        try:
            with translate_os_errors(key):
                async for chunk in _iter_chunks(data):
                    size += len(chunk)
                    if max_bytes is not None and size > max_bytes:
                        raise QuotaExceededError(f"Write to {key} exceeds {max_bytes} bytes")
                    digest.update(chunk)
                    await asyncio.to_thread(fh.write, chunk)
                await asyncio.to_thread(_finish)
        except BaseException:
            with contextlib.suppress(OSError):
                fh.close()
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            raise

        return StoredObject(key=key, size=size, checksum=digest.hexdigest())

    # =========================================================================
    # Delete / Move / Copy
    # =========================================================================

    async def delete(self, key: str) -> None:
        """Remove the object (or directory tree) at *key*. Missing keys are a no-op."""
        resolved = self._resolve_key(key)

        def _delete() -> None:
            if resolved.is_dir():
                shutil.rmtree(resolved)
            else:
                resolved.unlink(missing_ok=True)

        with translate_os_errors(key):
            await asyncio.to_thread(_delete)

    async def move(self, key: str, new_key: str) -> None:
        """Rename *key* to *new_key*. Refuses to clobber an existing object."""
        src = self._resolve_key(key)
        dest = self._resolve_key(new_key)

        def _move() -> None:
            if not src.exists():
                raise FileNotFoundError(key)
            if dest.exists():
                raise FileExistsError(new_key)
            dest.parent.mkdir(parents=True, exist_ok=True)
            src.rename(dest)

        with translate_os_errors(key):
            await asyncio.to_thread(_move)

    async def copy(self, key: str, new_key: str) -> StoredObject:
        """Duplicate the bytes of *key* into an independent object at *new_key*."""
        if not await self.exists(key):
            raise NotFoundError(f"Object not found: {key}")
        return await self.write(new_key, self.read(key), overwrite=False)

    # =========================================================================
    # Stat
    # =========================================================================

    async def stat(self, key: str) -> ObjectStat:
        resolved = self._resolve_key(key)
        with translate_os_errors(key):
            st = await asyncio.to_thread(resolved.stat)
        return _as_stat(key, st, resolved.is_dir())

    async def exists(self, key: str) -> bool:
        try:
            resolved = self._resolve_key(key)
        except PermissionDeniedError:
            return False
        return await asyncio.to_thread(resolved.exists)

    async def iter_objects(self) -> list[ObjectStat]:
        """Every regular file under the root, temp files included."""

        def _walk() -> list[ObjectStat]:
            found: list[ObjectStat] = []
            for dirpath, _dirnames, filenames in os.walk(self.root):
                for filename in filenames:
                    path = Path(dirpath) / filename
                    try:
                        st = path.lstat()
                    except FileNotFoundError:
                        continue
                    found.append(_as_stat(self._to_key(path), st, False))
            return found

        with translate_os_errors(str(self.root)):
            return await asyncio.to_thread(_walk)

    def capacity(self) -> int:
        """Total size in bytes of the filesystem holding the root."""
        return shutil.disk_usage(self.root).total
