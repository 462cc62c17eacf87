"""User storage fields and the AppSettings singleton."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import JSON, BigInteger, Column, DateTime, Index, func
from sqlmodel import Field, SQLModel

from .files import generate_id

APP_SETTINGS_ID = "app_settings"
DEFAULT_MAX_UPLOAD_SIZE: int = 10 * 1024 * 1024 * 1024  # 10 GiB


class User(SQLModel, table=True):
    """Storage-relevant columns of a user account — ``users``.

    ``custom_drive_path`` replaces managed storage for the user when
    ``custom_drive_enabled`` is set. Paths are unique case-insensitively.
    """

    __tablename__ = "users"

    id: str = Field(default_factory=generate_id, primary_key=True)
    email: str | None = Field(default=None, index=True)
    storage_limit: int | None = Field(default=None, sa_type=BigInteger)  # type: ignore[invalid-argument-type]
    custom_drive_enabled: bool = Field(default=False)
    custom_drive_path: str | None = Field(default=None)
    custom_drive_ignore_patterns: list[str] = Field(
        default_factory=list, sa_column=Column(JSON, nullable=False, default=list)
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )


Index(
    "uq_users_custom_drive_path_ci",
    func.lower(User.__table__.c.custom_drive_path),  # type: ignore[attr-defined]
    unique=True,
)


class AppSettings(SQLModel, table=True):
    """Singleton row of instance-wide settings — ``app_settings``."""

    __tablename__ = "app_settings"

    id: str = Field(default=APP_SETTINGS_ID, primary_key=True)
    first_user_id: str | None = Field(default=None)
    signup_enabled: bool = Field(default=True)
    max_upload_size_bytes: int = Field(
        default=DEFAULT_MAX_UPLOAD_SIZE,
        sa_type=BigInteger,  # type: ignore[invalid-argument-type]
    )
    hide_file_extensions: bool = Field(default=False)
    electron_only_access: bool = Field(default=False)
    onlyoffice_url: str | None = Field(default=None)
    onlyoffice_jwt_secret: str | None = Field(default=None)
    share_base_url: str | None = Field(default=None)
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_type=DateTime(timezone=True),  # type: ignore[invalid-argument-type]
    )
