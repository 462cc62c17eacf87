"""Result types: EntryInfo, ItemResult, BulkResult, SweepStats, etc."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime


@dataclass
class EntryInfo:
    """File/folder metadata as exposed to callers."""

    id: str
    owner_id: str
    name: str
    type: str
    parent_id: str | None = None
    size: int = 0
    mime_type: str | None = None
    starred: bool = False
    backend: str = "managed"
    created_at: datetime | None = None
    modified_at: datetime | None = None
    deleted_at: datetime | None = None

    @property
    def is_folder(self) -> bool:
        return self.type == "folder"


@dataclass
class StoredObject:
    """Outcome of a byte-store write or copy."""

    key: str
    size: int
    checksum: str


@dataclass(frozen=True)
class ObjectStat:
    """Size and modification time of a physical object."""

    key: str
    size: int
    mtime: datetime
    is_dir: bool = False


@dataclass
class ItemResult:
    """Per-entry outcome inside a bulk operation."""

    entry_id: str
    success: bool
    message: str
    error_kind: str | None = None
    entry: EntryInfo | None = None


@dataclass
class BulkResult:
    """Result of a bulk operation (move, copy, trash, restore, delete, star)."""

    items: list[ItemResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(item.success for item in self.items)

    @property
    def succeeded(self) -> list[ItemResult]:
        return [item for item in self.items if item.success]

    @property
    def failed(self) -> list[ItemResult]:
        return [item for item in self.items if not item.success]


@dataclass
class StorageUsage:
    """Byte usage of one owner against their effective limit."""

    used: int
    limit: int

    @property
    def remaining(self) -> int:
        return max(self.limit - self.used, 0)


@dataclass
class SweepStats:
    """Aggregate counters returned by a reconciler run."""

    examined: int = 0
    deleted: int = 0
    failed: int = 0
    dangling: list[str] = field(default_factory=list)


@dataclass
class ScanStats:
    """Aggregate counters returned by a custom-drive scan."""

    created: int = 0
    updated: int = 0
    trashed: int = 0
    revived: int = 0
    skipped: bool = False
    errors: int = 0
