from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field, Column, JSON, UniqueConstraint, Index
from enum import Enum


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def naive_timestamp(**kwargs):
    """Timestamp column holding naive UTC values from :func:`utcnow`."""
    return Field(sa_type=DateTime(timezone=False), **kwargs)


class Role(str, Enum):
    ROOM_OWNER = "ROOM_OWNER"
    ADMIN = "ADMIN"
    CONTRIBUTOR = "CONTRIBUTOR"
    VIEWER = "VIEWER"
    AUDITOR = "AUDITOR"


class RoomStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ARCHIVED = "ARCHIVED"
    CLOSED = "CLOSED"


class ShareTarget(str, Enum):
    FILE = "FILE"
    FOLDER = "FOLDER"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    DENIED = "DENIED"


class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(index=True, unique=True)
    name: str = ""
    password_hash: Optional[str] = None
    is_active: bool = True
    is_platform_admin: bool = False
    last_login_at: Optional[datetime] = naive_timestamp(default=None)
    created_at: datetime = naive_timestamp(default_factory=utcnow)

    @property
    def display_name(self) -> str:
        return self.name or self.email


class Room(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    description: Optional[str] = None
    created_by: Optional[int] = Field(default=None, foreign_key="user.id")
    status: RoomStatus = Field(default=RoomStatus.ACTIVE)
    expires_at: Optional[datetime] = naive_timestamp(default=None)

    # Room-wide policy
    allow_download: bool = True
    allow_print: bool = True
    allow_copy_paste: bool = False
    watermark_enabled: bool = True
    require_nda: bool = False

    created_at: datetime = naive_timestamp(default_factory=utcnow)


class Folder(SQLModel, table=True):
    __table_args__ = (Index("ix_folder_room_parent", "room_id", "parent_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(index=True, foreign_key="room.id")
    parent_id: Optional[int] = Field(default=None, foreign_key="folder.id")
    name: str
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class File(SQLModel, table=True):
    __table_args__ = (
        Index("ix_file_room_folder", "room_id", "folder_id"),
        Index("ix_file_created", "created_at"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(index=True, foreign_key="room.id")
    folder_id: Optional[int] = Field(default=None, foreign_key="folder.id")
    name: str
    mime_type: Optional[str] = None
    size_bytes: Optional[int] = None
    storage_key: str
    sha256: str = Field(index=True)
    uploaded_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class RoomAccess(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("user_id", "room_id", name="uq_access_user_room"),
        Index("ix_access_room_role", "room_id", "role"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(index=True, foreign_key="user.id")
    room_id: int = Field(index=True, foreign_key="room.id")
    role: Role = Field(default=Role.VIEWER)

    can_view: bool = False
    can_download: bool = False
    can_print: bool = False
    can_upload: bool = False
    can_edit: bool = False
    can_invite: bool = False
    can_manage_qa: bool = False
    can_view_audit: bool = False
    can_manage_users: bool = False
    can_manage_groups: bool = False
    can_manage_room: bool = False

    ip_whitelist: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    allowed_countries: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    expires_at: Optional[datetime] = naive_timestamp(default=None)
    nda_accepted_at: Optional[datetime] = naive_timestamp(default=None)

    created_at: datetime = naive_timestamp(default_factory=utcnow)
    updated_at: datetime = naive_timestamp(default_factory=utcnow)


class UserGroup(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("room_id", "name", name="uq_group_room_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(index=True, foreign_key="room.id")
    name: str
    description: Optional[str] = None
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class GroupMembership(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("group_id", "user_id", name="uq_group_user"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    group_id: int = Field(index=True, foreign_key="usergroup.id")
    user_id: int = Field(index=True, foreign_key="user.id")
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class FolderPermission(SQLModel, table=True):
    """Folder-scoped rule for one user or one group. ``None`` flags inherit."""

    __table_args__ = (Index("ix_folderperm_folder", "folder_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    room_id: int = Field(foreign_key="room.id")
    folder_id: int = Field(foreign_key="folder.id")
    user_id: Optional[int] = Field(default=None, foreign_key="user.id")
    group_id: Optional[int] = Field(default=None, foreign_key="usergroup.id")

    can_view: Optional[bool] = None
    can_download: Optional[bool] = None
    can_print: Optional[bool] = None
    can_upload: Optional[bool] = None
    can_edit: Optional[bool] = None
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class ShareLink(SQLModel, table=True):
    __table_args__ = (
        Index("ix_share_file", "file_id"),
        Index("ix_share_folder", "folder_id"),
        Index("ix_share_creator", "created_by"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    token: str = Field(index=True, unique=True)
    target_type: ShareTarget
    file_id: Optional[int] = Field(default=None, foreign_key="file.id")
    folder_id: Optional[int] = Field(default=None, foreign_key="folder.id")
    room_id: int = Field(index=True, foreign_key="room.id")
    created_by: int = Field(foreign_key="user.id")

    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    message: Optional[str] = None

    is_active: bool = True
    max_views: Optional[int] = None
    current_views: int = 0
    expires_at: Optional[datetime] = naive_timestamp(default=None)
    password_hash: Optional[str] = None

    # Frozen at issue time
    allow_download: bool = True
    allow_print: bool = True
    require_auth: bool = False

    last_accessed_at: Optional[datetime] = naive_timestamp(default=None)
    revoked_at: Optional[datetime] = naive_timestamp(default=None)
    revoked_by: Optional[int] = Field(default=None, foreign_key="user.id")
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class AccessRequest(SQLModel, table=True):
    __table_args__ = (
        Index("ix_request_room_status", "room_id", "status"),
        Index("ix_request_user_room", "user_id", "room_id"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id")
    room_id: int = Field(foreign_key="room.id")
    folder_id: Optional[int] = Field(default=None, foreign_key="folder.id")
    reason: Optional[str] = None
    status: RequestStatus = Field(default=RequestStatus.PENDING)
    granted_role: Optional[Role] = None
    reviewed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    reviewed_at: Optional[datetime] = naive_timestamp(default=None)
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class AuditEvent(SQLModel, table=True):
    __table_args__ = (
        Index("ix_audit_created", "created_at"),  # Time-series queries
        Index("ix_audit_room_action", "room_id", "action"),  # Room activity reports
        Index("ix_audit_actor_created", "actor_id", "created_at"),  # User activity
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    actor_id: Optional[int] = Field(default=None, index=True, foreign_key="user.id")
    action: str
    resource_type: str
    resource_id: Optional[str] = None
    room_id: Optional[int] = Field(default=None, index=True, foreign_key="room.id")
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    details_json: Optional[str] = None
    created_at: datetime = naive_timestamp(default_factory=utcnow)


class ScheduledDeletion(SQLModel, table=True):
    """Durable cleanup record for temporary watermark artifacts."""

    __table_args__ = (Index("ix_deletion_due", "deleted_at", "delete_after"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    storage_key: str = Field(index=True)
    delete_after: datetime = naive_timestamp()
    deleted_at: Optional[datetime] = naive_timestamp(default=None)
    created_at: datetime = naive_timestamp(default_factory=utcnow)
