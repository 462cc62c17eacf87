"""ShareLink models — anonymous read tokens over files and folder subtrees.

``ShareLink`` holds the token, its creator, and its primary entry.
``ShareLinkFile`` joins additional entries to the same token (bulk share).
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from .files import generate_id


class ShareLinkBase(SQLModel):
    """Base fields for a share link. Subclass with ``table=True`` for a concrete table."""

    id: str = Field(default_factory=generate_id, primary_key=True)
    file_id: str = Field(index=True)
    user_id: str = Field(index=True)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
    expires_at: datetime | None = Field(
        default=None,
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


class ShareLink(ShareLinkBase, table=True):
    """Default share link table — ``share_links``."""

    __tablename__ = "share_links"


class ShareLinkFile(SQLModel, table=True):
    """Entry covered by a share token — ``share_link_files``."""

    __tablename__ = "share_link_files"

    share_id: str = Field(primary_key=True)
    file_id: str = Field(primary_key=True, index=True)
