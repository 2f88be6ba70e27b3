"""
Room administration: rooms, members, folders, files, groups and folder rules.

Every mutation resolves the actor's capabilities first and runs inside an
audit guard, so refusals are recorded the same way as content denials.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
import hashlib
import os
from uuid import uuid4

from pydantic import BaseModel, model_validator
from sqlmodel import Session, col, select

from . import audit
from .accounts import get_or_create_user
from .audit import RequestContext
from .config import settings
from .exceptions import Conflict, NotFound, PermissionDenied
from .models import (
    File,
    Folder,
    FolderPermission,
    GroupMembership,
    Role,
    Room,
    RoomAccess,
    RoomStatus,
    User,
    UserGroup,
    as_naive_utc,
    utcnow,
)
from .permissions import (
    CAPABILITY_FLAGS,
    SCOPED_FLAGS,
    apply_role,
    get_access,
    require,
    require_manager,
    resolve,
)
from .notifications import Notifier, dispatch
from .storage import StorageBackend


class RoomSettings(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    status: Optional[RoomStatus] = None
    expires_at: Optional[datetime] = None
    allow_download: Optional[bool] = None
    allow_print: Optional[bool] = None
    allow_copy_paste: Optional[bool] = None
    watermark_enabled: Optional[bool] = None
    require_nda: Optional[bool] = None


class AccessUpdate(BaseModel):
    role: Optional[Role] = None
    can_view: Optional[bool] = None
    can_download: Optional[bool] = None
    can_print: Optional[bool] = None
    can_upload: Optional[bool] = None
    can_edit: Optional[bool] = None
    can_invite: Optional[bool] = None
    can_manage_qa: Optional[bool] = None
    can_view_audit: Optional[bool] = None
    can_manage_users: Optional[bool] = None
    can_manage_groups: Optional[bool] = None
    can_manage_room: Optional[bool] = None
    ip_whitelist: Optional[List[str]] = None
    allowed_countries: Optional[List[str]] = None
    expires_at: Optional[datetime] = None


class FolderRule(BaseModel):
    user_id: Optional[int] = None
    group_id: Optional[int] = None
    can_view: Optional[bool] = None
    can_download: Optional[bool] = None
    can_print: Optional[bool] = None
    can_upload: Optional[bool] = None
    can_edit: Optional[bool] = None

    @model_validator(mode="after")
    def _one_subject(self) -> "FolderRule":
        if (self.user_id is None) == (self.group_id is None):
            raise ValueError("exactly one of user_id or group_id is required")
        return self


def get_room(session: Session, room_id: int) -> Room:
    room = session.get(Room, room_id)
    if room is None:
        raise NotFound("Room not found")
    return room


def serialize_room(room: Room, role: Optional[Role] = None) -> Dict[str, Any]:
    return {
        "id": room.id,
        "name": room.name,
        "description": room.description,
        "status": room.status.value,
        "expires_at": room.expires_at.isoformat() if room.expires_at else None,
        "allow_download": room.allow_download,
        "allow_print": room.allow_print,
        "allow_copy_paste": room.allow_copy_paste,
        "watermark_enabled": room.watermark_enabled,
        "require_nda": room.require_nda,
        "role": role.value if role else None,
        "created_at": room.created_at.isoformat(),
    }


def serialize_access(access: RoomAccess, user: Optional[User] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {flag: getattr(access, flag) for flag in CAPABILITY_FLAGS}
    data.update(
        {
            "user_id": access.user_id,
            "email": user.email if user else None,
            "role": access.role.value,
            "ip_whitelist": access.ip_whitelist or [],
            "allowed_countries": access.allowed_countries or [],
            "expires_at": access.expires_at.isoformat() if access.expires_at else None,
            "nda_accepted_at": (
                access.nda_accepted_at.isoformat() if access.nda_accepted_at else None
            ),
        }
    )
    return data


def create_room(
    session: Session,
    owner: User,
    name: str,
    description: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> Room:
    """Create a room; the creator becomes its ROOM_OWNER."""
    room = Room(name=name, description=description, created_by=owner.id)
    session.add(room)
    session.flush()
    access = apply_role(RoomAccess(user_id=owner.id, room_id=room.id), Role.ROOM_OWNER)  # type: ignore[arg-type]
    session.add(access)
    audit.append(
        session,
        "ROOM_CREATE",
        resource_type="room",
        resource_id=room.id,
        room_id=room.id,
        actor_id=owner.id,
        context=context,
        details={"name": name},
    )
    session.commit()
    session.refresh(room)
    return room


def list_rooms(session: Session, user: User) -> List[Dict[str, Any]]:
    rows = session.exec(
        select(Room, RoomAccess).where(
            RoomAccess.user_id == user.id,
            RoomAccess.room_id == Room.id,
            RoomAccess.can_view == True,  # noqa: E712
        )
    ).all()
    return [serialize_room(room, access.role) for room, access in rows]


def update_settings(
    session: Session,
    actor: User,
    room: Room,
    changes: RoomSettings,
    context: Optional[RequestContext] = None,
) -> Room:
    with audit.guard(
        session,
        "ROOM_SETTINGS_UPDATE",
        resource_type="room",
        resource_id=room.id,
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        access = get_access(session, actor.id, room.id)  # type: ignore[arg-type]
        # Settings stay editable on a closed or expired room so the owner can reopen it
        if access is None or not access.can_view or not (
            access.can_manage_room or access.role == Role.ROOM_OWNER
        ):
            raise PermissionDenied("missing_can_manage_room")
        updates = changes.model_dump(exclude_unset=True)
        if "expires_at" in updates:
            updates["expires_at"] = as_naive_utc(updates["expires_at"])
        for key, value in updates.items():
            setattr(room, key, value)
        session.add(room)
        scope.details["changed"] = sorted(updates)
    session.refresh(room)
    return room


def add_member(
    session: Session,
    actor: User,
    room: Room,
    email: str,
    role: Role = Role.VIEWER,
    name: str = "",
    context: Optional[RequestContext] = None,
) -> RoomAccess:
    """Invite a user by email, creating the account if needed."""
    with audit.guard(
        session,
        "MEMBER_ADD",
        resource_type="room",
        resource_id=room.id,
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        caps = resolve(session, actor.id, room, context=context)  # type: ignore[arg-type]
        if role == Role.ROOM_OWNER:
            raise PermissionDenied("owner_role_not_grantable")
        if role == Role.ADMIN or not caps.can_invite:
            require(caps, "can_manage_users")
        target = get_or_create_user(session, email, name)
        access = get_access(session, target.id, room.id)  # type: ignore[arg-type]
        if access is not None and access.role == Role.ROOM_OWNER:
            raise PermissionDenied("owner_access_protected")
        access = apply_role(
            access or RoomAccess(user_id=target.id, room_id=room.id), role  # type: ignore[arg-type]
        )
        session.add(access)
        scope.details.update({"user_id": target.id, "role": role.value})
    session.refresh(access)
    return access


async def invite_member(
    session: Session,
    notifier: Notifier,
    actor: User,
    room: Room,
    email: str,
    role: Role = Role.VIEWER,
    name: str = "",
    message: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> RoomAccess:
    """Add a member, then tell them. Delivery failures leave the membership in place."""
    access = add_member(session, actor, room, email, role, name, context)
    invitee = session.get(User, access.user_id)
    if invitee is not None:
        await dispatch(
            notifier,
            [invitee.email],
            "room_invitation",
            {
                "room_id": room.id,
                "room_name": room.name,
                "role": access.role.value,
                "inviter_name": actor.display_name,
                "message": message or "",
                "room_url": f"{settings.web_base_url.rstrip('/')}/rooms/{room.id}",
            },
        )
    return access


def list_members(
    session: Session, actor: User, room: Room, context: Optional[RequestContext] = None
) -> List[Dict[str, Any]]:
    with audit.guard(
        session,
        "MEMBER_LIST",
        resource_type="room",
        resource_id=room.id,
        room_id=room.id,
        actor_id=actor.id,
        context=context,
        record_success=False,
    ):
        require(resolve(session, actor.id, room, context=context), "can_view")  # type: ignore[arg-type]
    rows = session.exec(
        select(RoomAccess, User)
        .where(RoomAccess.room_id == room.id, col(RoomAccess.user_id) == col(User.id))
        .order_by(col(User.email))
    ).all()
    return [serialize_access(access, user) for access, user in rows]


def update_permissions(
    session: Session,
    actor: User,
    room: Room,
    user_id: int,
    changes: AccessUpdate,
    context: Optional[RequestContext] = None,
) -> RoomAccess:
    """Change a member's role, flags or restrictions."""
    with audit.guard(
        session,
        "PERMISSION_CHANGE",
        resource_type="room_access",
        resource_id=user_id,
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        require(resolve(session, actor.id, room, context=context), "can_manage_users")  # type: ignore[arg-type]
        access = get_access(session, user_id, room.id)  # type: ignore[arg-type]
        if access is None:
            raise PermissionDenied("member_not_found")
        if access.role == Role.ROOM_OWNER:
            raise PermissionDenied("owner_access_protected")
        if changes.role == Role.ROOM_OWNER:
            raise PermissionDenied("owner_role_not_grantable")

        updates = changes.model_dump(exclude_unset=True)
        previous_role = access.role
        role = updates.pop("role", None)
        if role is not None:
            apply_role(access, role)
        for key, value in updates.items():
            if key == "expires_at":
                value = as_naive_utc(value)
            if key == "allowed_countries" and value is not None:
                value = [c.upper() for c in value]
            setattr(access, key, value)
        access.updated_at = utcnow()
        session.add(access)
        scope.details.update(
            {
                "user_id": user_id,
                "previous_role": previous_role.value,
                "role": access.role.value,
                "changed": sorted(changes.model_dump(exclude_unset=True)),
            }
        )
    session.refresh(access)
    return access


def accept_nda(
    session: Session, user: User, room: Room, context: Optional[RequestContext] = None
) -> RoomAccess:
    with audit.guard(
        session,
        "NDA_ACCEPT",
        resource_type="room",
        resource_id=room.id,
        room_id=room.id,
        actor_id=user.id,
        context=context,
    ):
        access = get_access(session, user.id, room.id)  # type: ignore[arg-type]
        if access is None or not access.can_view:
            raise PermissionDenied("no_room_access")
        if access.nda_accepted_at is None:
            access.nda_accepted_at = utcnow()
            session.add(access)
    session.refresh(access)
    return access


def _check_folder(session: Session, room: Room, folder_id: Optional[int]) -> Optional[Folder]:
    if folder_id is None:
        return None
    folder = session.get(Folder, folder_id)
    if folder is None or folder.room_id != room.id:
        raise NotFound("Folder not found")
    return folder


def create_folder(
    session: Session,
    actor: User,
    room: Room,
    name: str,
    parent_id: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> Folder:
    _check_folder(session, room, parent_id)
    with audit.guard(
        session,
        "FOLDER_CREATE",
        resource_type="folder",
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        caps = resolve(session, actor.id, room, folder_id=parent_id, context=context)  # type: ignore[arg-type]
        require(caps, "can_upload")
        folder = Folder(room_id=room.id, parent_id=parent_id, name=name)  # type: ignore[arg-type]
        session.add(folder)
        session.flush()
        scope.resource_id = folder.id
        scope.details.update({"name": name, "parent_id": parent_id})
    session.refresh(folder)
    return folder


async def register_file(
    session: Session,
    storage: StorageBackend,
    actor: User,
    room: Room,
    name: str,
    data: bytes,
    mime_type: Optional[str] = None,
    folder_id: Optional[int] = None,
    context: Optional[RequestContext] = None,
) -> File:
    """Store an uploaded document and register it in the room."""
    _check_folder(session, room, folder_id)
    with audit.guard(
        session,
        "FILE_UPLOAD",
        resource_type="file",
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        caps = resolve(session, actor.id, room, folder_id=folder_id, context=context)  # type: ignore[arg-type]
        require(caps, "can_upload")
        ext = os.path.splitext(name)[1].lower()
        key = f"rooms/{room.id}/{uuid4().hex}{ext}"
        await storage.save_bytes(key, data)
        file = File(
            room_id=room.id,  # type: ignore[arg-type]
            folder_id=folder_id,
            name=name,
            mime_type=mime_type,
            size_bytes=len(data),
            storage_key=key,
            sha256=hashlib.sha256(data).hexdigest(),
            uploaded_by=actor.id,
        )
        session.add(file)
        session.flush()
        scope.resource_id = file.id
        scope.details.update({"name": name, "size_bytes": len(data), "folder_id": folder_id})
    session.refresh(file)
    return file


def list_files(
    session: Session, actor: User, room: Room, context: Optional[RequestContext] = None
) -> List[File]:
    """Files the actor can view; folder rules are evaluated per folder."""
    with audit.guard(
        session,
        "FILE_LIST",
        resource_type="room",
        resource_id=room.id,
        room_id=room.id,
        actor_id=actor.id,
        context=context,
        record_success=False,
    ):
        require(resolve(session, actor.id, room, context=context), "can_view")  # type: ignore[arg-type]
    files = session.exec(
        select(File).where(File.room_id == room.id).order_by(col(File.name))
    ).all()
    visible: Dict[Optional[int], bool] = {}
    result = []
    for file in files:
        if file.folder_id not in visible:
            caps = resolve(session, actor.id, room, folder_id=file.folder_id, context=context)  # type: ignore[arg-type]
            visible[file.folder_id] = caps.can_view
        if visible[file.folder_id]:
            result.append(file)
    return result


def create_group(
    session: Session,
    actor: User,
    room: Room,
    name: str,
    description: Optional[str] = None,
    context: Optional[RequestContext] = None,
) -> UserGroup:
    with audit.guard(
        session,
        "GROUP_CREATE",
        resource_type="group",
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        require(resolve(session, actor.id, room, context=context), "can_manage_groups")  # type: ignore[arg-type]
        existing = session.exec(
            select(UserGroup).where(UserGroup.room_id == room.id, UserGroup.name == name)
        ).first()
        if existing is not None:
            raise Conflict("A group with this name already exists")
        group = UserGroup(room_id=room.id, name=name, description=description)  # type: ignore[arg-type]
        session.add(group)
        session.flush()
        scope.resource_id = group.id
        scope.details["name"] = name
    session.refresh(group)
    return group


def add_group_member(
    session: Session,
    actor: User,
    room: Room,
    group_id: int,
    user_id: int,
    context: Optional[RequestContext] = None,
) -> GroupMembership:
    group = session.get(UserGroup, group_id)
    if group is None or group.room_id != room.id:
        raise NotFound("Group not found")
    with audit.guard(
        session,
        "GROUP_MEMBER_ADD",
        resource_type="group",
        resource_id=group_id,
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        require(resolve(session, actor.id, room, context=context), "can_manage_groups")  # type: ignore[arg-type]
        if get_access(session, user_id, room.id) is None:  # type: ignore[arg-type]
            raise NotFound("User is not a member of this room")
        membership = session.exec(
            select(GroupMembership).where(
                GroupMembership.group_id == group_id, GroupMembership.user_id == user_id
            )
        ).first()
        if membership is None:
            membership = GroupMembership(group_id=group_id, user_id=user_id)
            session.add(membership)
        scope.details["user_id"] = user_id
    session.refresh(membership)
    return membership


def set_folder_permission(
    session: Session,
    actor: User,
    room: Room,
    folder_id: int,
    rule: FolderRule,
    context: Optional[RequestContext] = None,
) -> FolderPermission:
    """Create or replace the folder rule for one user or one group."""
    _check_folder(session, room, folder_id)
    with audit.guard(
        session,
        "FOLDER_PERMISSION_CHANGE",
        resource_type="folder",
        resource_id=folder_id,
        room_id=room.id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        require_manager(resolve(session, actor.id, room, context=context))  # type: ignore[arg-type]
        if rule.group_id is not None:
            group = session.get(UserGroup, rule.group_id)
            if group is None or group.room_id != room.id:
                raise NotFound("Group not found")
        subject = (
            FolderPermission.user_id == rule.user_id
            if rule.user_id is not None
            else FolderPermission.group_id == rule.group_id
        )
        permission = session.exec(
            select(FolderPermission).where(FolderPermission.folder_id == folder_id, subject)
        ).first()
        if permission is None:
            permission = FolderPermission(
                room_id=room.id,  # type: ignore[arg-type]
                folder_id=folder_id,
                user_id=rule.user_id,
                group_id=rule.group_id,
            )
        for flag in SCOPED_FLAGS:
            setattr(permission, flag, getattr(rule, flag))
        session.add(permission)
        scope.details.update(
            {
                "user_id": rule.user_id,
                "group_id": rule.group_id,
                **{flag: getattr(rule, flag) for flag in SCOPED_FLAGS},
            }
        )
    session.refresh(permission)
    return permission
