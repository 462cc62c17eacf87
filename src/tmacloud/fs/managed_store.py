"""ManagedStore — application-owned storage keyed by entry id."""

from __future__ import annotations

import posixpath
from pathlib import Path

from .local_disk import DiskStore


def managed_key(entry_id: str, name: str) -> str:
    """Derive the physical key of a managed file from its id.

    Keys never contain the display name, only its extension, so renames
    never touch disk. Objects are sharded by the first two id characters.
    """
    ext = posixpath.splitext(name)[1].lower()
    return f"{entry_id[:2]}/{entry_id}{ext}"


class ManagedStore(DiskStore):
    """Disk store under the configured uploads directory.

    The root is created if missing. Keys are opaque; see ``managed_key``.
    """

    def __init__(self, root: Path | str) -> None:
        Path(root).mkdir(parents=True, exist_ok=True)
        super().__init__(root)

    def key_for(self, entry_id: str, name: str) -> str:
        return managed_key(entry_id, name)
