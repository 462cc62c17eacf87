"""File tree layer — stores, resolver, mutator, sharing, reconcilers, scanner."""

from tmacloud.fs.custom_drive import CustomDriveStore
from tmacloud.fs.drives import CustomDriveService
from tmacloud.fs.exceptions import (
    CycleRejectedError,
    InvariantViolationError,
    NameConflictError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    ShareExpiredError,
    StorageIOError,
    TreeError,
)
from tmacloud.fs.local_disk import DiskStore
from tmacloud.fs.managed_store import ManagedStore, managed_key
from tmacloud.fs.protocol import ByteStore
from tmacloud.fs.reconcile import OrphanSweeper, ShareSweeper, TrashSweeper
from tmacloud.fs.resolver import NameResolver, disambiguate_name, validate_name
from tmacloud.fs.scanner import CustomDriveScanner
from tmacloud.fs.sharing import ShareLinkService
from tmacloud.fs.tree import FileTree
from tmacloud.fs.types import (
    BulkResult,
    EntryInfo,
    ItemResult,
    ObjectStat,
    ScanStats,
    StorageUsage,
    StoredObject,
    SweepStats,
)

__all__ = [
    "BulkResult",
    "ByteStore",
    "CustomDriveScanner",
    "CustomDriveService",
    "CustomDriveStore",
    "CycleRejectedError",
    "DiskStore",
    "EntryInfo",
    "FileTree",
    "InvariantViolationError",
    "ItemResult",
    "ManagedStore",
    "NameConflictError",
    "NameResolver",
    "NotFoundError",
    "ObjectStat",
    "OrphanSweeper",
    "PermissionDeniedError",
    "QuotaExceededError",
    "ScanStats",
    "ShareExpiredError",
    "ShareLinkService",
    "ShareSweeper",
    "StorageIOError",
    "StorageUsage",
    "StoredObject",
    "SweepStats",
    "TrashSweeper",
    "TreeError",
    "disambiguate_name",
    "managed_key",
    "validate_name",
]
