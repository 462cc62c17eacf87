"""CustomDriveStore — a user-designated host directory used as storage."""

from __future__ import annotations

import asyncio
import fnmatch
import os
import posixpath
import stat
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING

from .exceptions import NotFoundError, PermissionDeniedError
from .local_disk import DiskStore, _as_stat, translate_os_errors

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .types import ObjectStat


def custom_key(parent_key: str | None, name: str) -> str:
    """Relative path of *name* inside the folder stored at *parent_key*."""
    return posixpath.join(parent_key, name) if parent_key else name


def is_ignored(rel_path: str, patterns: Iterable[str]) -> bool:
    """True for dotfiles and for paths matching any glob in *patterns*.

    A pattern matches against the basename and against the full relative
    path, so both ``*.tmp`` and ``cache/*`` work.
    """
    name = posixpath.basename(rel_path)
    if name.startswith("."):
        return True
    return any(
        fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(rel_path, pattern)
        for pattern in patterns
    )


class CustomDriveStore(DiskStore):
    """Disk store over a user's own directory.

    Unlike managed storage the layout mirrors the virtual tree: keys are
    relative paths, so renames and moves are real filesystem renames and
    folders exist physically. Files may appear or change outside the
    application; ``walk`` feeds the scanner.
    """

    def __init__(self, host_dir: Path | str) -> None:
        super().__init__(host_dir)
        if not self.root.exists():
            raise NotFoundError(f"Custom drive does not exist: {self.root}")
        if not self.root.is_dir():
            raise PermissionDeniedError(f"Custom drive is not a directory: {self.root}")

    async def mkdir(self, key: str) -> None:
        """Create the directory at *key*; it must not already exist."""
        resolved = self._resolve_key(key)
        with translate_os_errors(key):
            await asyncio.to_thread(resolved.mkdir, parents=False, exist_ok=False)

    async def is_dir(self, key: str) -> bool:
        resolved = self._resolve_key(key)
        return await asyncio.to_thread(resolved.is_dir)

    async def release(self, key: str, *, trashed_at: datetime | None = None) -> bool:
        """Remove the object of a purged entry unless something new lives there.

        Files modified after *trashed_at* are kept, and so are directories
        that still hold anything once their known children are gone.
        Returns True when nothing is left at *key*.
        """
        resolved = self._resolve_key(key)

        def _release() -> bool:
            try:
                st = resolved.lstat()
            except FileNotFoundError:
                return True
            if stat.S_ISDIR(st.st_mode):
                if any(resolved.iterdir()):
                    return False
                resolved.rmdir()
                return True
            if trashed_at is not None and datetime.fromtimestamp(st.st_mtime, UTC) > trashed_at:
                return False
            resolved.unlink(missing_ok=True)
            return True

        with translate_os_errors(key):
            return await asyncio.to_thread(_release)

    async def walk(self, ignore_patterns: Iterable[str] = ()) -> list[ObjectStat]:
        """Every directory and file under the root, parents before children.

        Dotfiles, ignored paths, and symlinks are skipped, and ignored
        directories are not descended into.
        """
        patterns = list(ignore_patterns)

        def _walk() -> list[ObjectStat]:
            found: list[ObjectStat] = []
            for dirpath, dirnames, filenames in os.walk(self.root):
                base = Path(dirpath)
                kept_dirs = []
                for dirname in sorted(dirnames):
                    path = base / dirname
                    key = self._to_key(path)
                    if is_ignored(key, patterns) or path.is_symlink():
                        continue
                    kept_dirs.append(dirname)
                    try:
                        found.append(_as_stat(key, path.lstat(), True))
                    except FileNotFoundError:
                        continue
                dirnames[:] = kept_dirs
                for filename in sorted(filenames):
                    path = base / filename
                    key = self._to_key(path)
                    if is_ignored(key, patterns) or path.is_symlink():
                        continue
                    try:
                        found.append(_as_stat(key, path.lstat(), False))
                    except FileNotFoundError:
                        continue
            return found

        with translate_os_errors(str(self.root)):
            return await asyncio.to_thread(_walk)
