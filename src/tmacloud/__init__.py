"""tmacloud: file-tree storage with trash, sharing, and reconciliation."""

__version__ = "0.1.0"

from tmacloud.config import TreeConfig
from tmacloud.db import create_engine_and_factory, create_schema
from tmacloud.events import EventBus, EventType, FileEvent
from tmacloud.fs import (
    CustomDriveScanner,
    CustomDriveService,
    FileTree,
    ManagedStore,
    TreeError,
)
from tmacloud.scheduler import MaintenanceScheduler
from tmacloud.settings import AppSettingsService, SettingsCache

__all__ = [
    "AppSettingsService",
    "CustomDriveScanner",
    "CustomDriveService",
    "EventBus",
    "EventType",
    "FileEvent",
    "FileTree",
    "MaintenanceScheduler",
    "ManagedStore",
    "SettingsCache",
    "TreeConfig",
    "TreeError",
    "__version__",
    "create_engine_and_factory",
    "create_schema",
]
