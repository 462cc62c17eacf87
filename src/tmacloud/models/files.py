"""FileEntry model — one row per file or folder in a user's virtual tree.

Provides ``FileEntryBase`` (non-table) and ``FileEntry`` (concrete table).
Name uniqueness among live siblings and storage-key uniqueness are enforced
by the indexes declared after the table class.
"""

from __future__ import annotations

import secrets
import string
from datetime import UTC, datetime
from enum import Enum

from sqlalchemy import BigInteger, DateTime, Index, func
from sqlmodel import Field, SQLModel

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ID_LENGTH: int = 16
"""Length of generated entry ids and share tokens."""

_ID_ALPHABET = string.ascii_letters + string.digits


def generate_id(length: int = ID_LENGTH) -> str:
    """Return a random ``[A-Za-z0-9]`` token of *length* characters."""
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(length))


class EntryType(str, Enum):
    """Discriminant of a tree entry."""

    FILE = "file"
    FOLDER = "folder"


class StorageKind(str, Enum):
    """Which byte store holds an entry's physical object."""

    MANAGED = "managed"
    CUSTOM = "custom"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class FileEntryBase(SQLModel):
    """Base fields for a tree entry. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=generate_id, primary_key=True)
    owner_id: str = Field(index=True)
    parent_id: str | None = Field(default=None, index=True)
    name: str
    type: EntryType
    size: int = Field(default=0, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    storage_key: str | None = Field(default=None)
    backend: StorageKind = Field(default=StorageKind.MANAGED)
    mime_type: str | None = Field(default=None)
    checksum: str | None = Field(default=None)
    starred: bool = Field(default=False)
    trash_root_id: str | None = Field(default=None, index=True)
    trashed_by_scanner: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    modified_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    deleted_at: datetime | None = Field(
        default=None,
        index=True,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )

    @property
    def is_folder(self) -> bool:
        return self.type == EntryType.FOLDER

    @property
    def is_trashed(self) -> bool:
        return self.deleted_at is not None


class FileEntry(FileEntryBase, table=True):
    """Default entry table — ``files``."""

    __tablename__ = "files"


# ---------------------------------------------------------------------------
# Indexes
# ---------------------------------------------------------------------------

_cols = FileEntry.__table__.c  # type: ignore[attr-defined]

Index(
    "uq_files_live_sibling_name",
    _cols.owner_id,
    func.coalesce(_cols.parent_id, ""),
    _cols.name,
    _cols.type,
    unique=True,
    sqlite_where=_cols.deleted_at.is_(None),
    postgresql_where=_cols.deleted_at.is_(None),
)

Index(
    "uq_files_storage_key",
    _cols.owner_id,
    _cols.type,
    _cols.storage_key,
    unique=True,
    sqlite_where=_cols.storage_key.is_not(None),
    postgresql_where=_cols.storage_key.is_not(None),
)
