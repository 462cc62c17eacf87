"""SQLModel tables for the file tree, share links, users, and app settings."""

from tmacloud.models.files import EntryType, FileEntry, FileEntryBase, StorageKind, generate_id
from tmacloud.models.shares import ShareLink, ShareLinkBase, ShareLinkFile
from tmacloud.models.users import APP_SETTINGS_ID, AppSettings, User

__all__ = [
    "APP_SETTINGS_ID",
    "AppSettings",
    "EntryType",
    "FileEntry",
    "FileEntryBase",
    "ShareLink",
    "ShareLinkBase",
    "ShareLinkFile",
    "StorageKind",
    "User",
    "generate_id",
]
