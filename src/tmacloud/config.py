"""TreeConfig — tunables for the file tree, reconcilers, and scheduler."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from tmacloud.models.users import DEFAULT_MAX_UPLOAD_SIZE

MAX_TREE_DEPTH: int = 256
"""Upper bound on ancestor walks; deeper chains are treated as corrupt."""

MAX_NAME_SUFFIX: int = 10_000
"""Largest ``(n)`` suffix tried when disambiguating a name."""


@dataclass
class TreeConfig:
    """Configuration shared by ``FileTree``, the sweepers and the scheduler.

    Attributes:
        managed_root: Root directory of managed storage.
        trash_retention: Age after which trashed entries are purged.
        orphan_grace: Minimum age of an unreferenced object before the
            orphan sweep may delete it. Protects in-flight uploads.
        share_retention: How long expired share rows are kept before the
            share sweep deletes them.
        sweep_batch_size: Entries permanently deleted per transaction.
        default_max_upload_size: Used when no AppSettings row exists.
        settings_ttl: Freshness window of the settings cache, in seconds.
    """

    managed_root: Path | str = "uploads"
    trash_retention: timedelta = timedelta(days=15)
    orphan_grace: timedelta = timedelta(hours=1)
    share_retention: timedelta = timedelta(0)
    sweep_batch_size: int = 500
    default_max_upload_size: int = DEFAULT_MAX_UPLOAD_SIZE
    settings_ttl: float = 60.0
    trash_sweep_interval: timedelta = timedelta(hours=24)
    orphan_sweep_interval: timedelta = timedelta(hours=24)
    share_sweep_interval: timedelta = timedelta(days=7)
    scan_interval: timedelta = timedelta(minutes=5)

    def __post_init__(self) -> None:
        self.managed_root = Path(self.managed_root)
        if self.sweep_batch_size < 1:
            raise ValueError(f"sweep_batch_size must be positive, got {self.sweep_batch_size}")
        if self.orphan_grace < timedelta(0):
            raise ValueError("orphan_grace must not be negative")
