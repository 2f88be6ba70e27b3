"""
Permission resolution for rooms, folders and files.

The effective capability set is computed fresh on every call from four
layers, each of which can only narrow what the previous one allowed:

1. the user's ``RoomAccess`` row (nothing without ``can_view``),
2. the room policy (download / print toggles),
3. folder rules for the user or any of the user's groups, root folder first,
4. restrictions evaluated against the request (IP, country, expiry, NDA).

Role-specific behaviour lives in two tables, ``ROLE_DEFAULTS`` (the flags a
new access row is seeded with) and ``ROLE_OVERRIDES`` (what a role forces
regardless of stored flags).
"""

from dataclasses import dataclass, fields
from datetime import datetime
from typing import Dict, List, Optional
import ipaddress

from sqlmodel import Session, col, select

from .audit import RequestContext
from .exceptions import PermissionDenied, RoomExpired
from .logging import get_logger
from .models import (
    File,
    Folder,
    FolderPermission,
    GroupMembership,
    Role,
    Room,
    RoomAccess,
    RoomStatus,
    UserGroup,
    utcnow,
)

logger = get_logger(__name__)

CAPABILITY_FLAGS = (
    "can_view",
    "can_download",
    "can_print",
    "can_upload",
    "can_edit",
    "can_invite",
    "can_manage_qa",
    "can_view_audit",
    "can_manage_users",
    "can_manage_groups",
    "can_manage_room",
)

# Flags a folder rule may narrow
SCOPED_FLAGS = ("can_view", "can_download", "can_print", "can_upload", "can_edit")

# Room policy toggle gating each flag; flags not listed are not policy gated
POLICY_GATES = {"can_download": "allow_download", "can_print": "allow_print"}


def _flags(*enabled: str) -> Dict[str, bool]:
    return {flag: flag in enabled for flag in CAPABILITY_FLAGS}


ROLE_DEFAULTS: Dict[Role, Dict[str, bool]] = {
    Role.ROOM_OWNER: _flags(*CAPABILITY_FLAGS),
    Role.ADMIN: _flags(
        "can_view",
        "can_download",
        "can_print",
        "can_upload",
        "can_edit",
        "can_invite",
        "can_manage_qa",
        "can_view_audit",
        "can_manage_users",
        "can_manage_groups",
    ),
    Role.CONTRIBUTOR: _flags(
        "can_view", "can_download", "can_print", "can_upload", "can_manage_qa"
    ),
    Role.VIEWER: _flags("can_view", "can_download", "can_print"),
    Role.AUDITOR: _flags("can_view", "can_view_audit"),
}


@dataclass(frozen=True)
class RoleOverride:
    forced: Dict[str, bool]
    exempt_from_scoped_rules: bool = False
    force_watermark: bool = False


ROLE_OVERRIDES: Dict[Role, RoleOverride] = {
    Role.ROOM_OWNER: RoleOverride(forced={}, exempt_from_scoped_rules=True),
    Role.AUDITOR: RoleOverride(
        forced={"can_download": False, "can_print": False}, force_watermark=True
    ),
}


@dataclass(frozen=True)
class EffectiveCapabilities:
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
    requires_watermark: bool = False
    role: Optional[Role] = None
    # Internal only; never sent to clients
    denial_reason: Optional[str] = None
    room_expired: bool = False

    @classmethod
    def none(
        cls, reason: str, role: Optional[Role] = None, room_expired: bool = False
    ) -> "EffectiveCapabilities":
        return cls(role=role, denial_reason=reason, room_expired=room_expired)

    @property
    def manages_room(self) -> bool:
        return (
            self.can_manage_users
            or self.can_manage_room
            or (self.can_view and self.role == Role.ROOM_OWNER)
        )

    def as_dict(self) -> Dict[str, bool]:
        return {f.name: getattr(self, f.name) for f in fields(self) if f.name in CAPABILITY_FLAGS}


def role_defaults(role: Role) -> Dict[str, bool]:
    return dict(ROLE_DEFAULTS[role])


def get_access(session: Session, user_id: int, room_id: int) -> Optional[RoomAccess]:
    return session.exec(
        select(RoomAccess).where(
            RoomAccess.user_id == user_id, RoomAccess.room_id == room_id
        )
    ).first()


def folder_chain(session: Session, folder_id: Optional[int]) -> List[Folder]:
    """Folders from the room root down to ``folder_id`` inclusive."""
    chain: List[Folder] = []
    seen = set()
    current = session.get(Folder, folder_id) if folder_id is not None else None
    while current is not None and current.id not in seen:
        seen.add(current.id)
        chain.append(current)
        current = session.get(Folder, current.parent_id) if current.parent_id else None
    chain.reverse()
    return chain


def user_group_ids(session: Session, user_id: int, room_id: int) -> List[int]:
    rows = session.exec(
        select(GroupMembership.group_id)
        .join(UserGroup, col(UserGroup.id) == col(GroupMembership.group_id))
        .where(GroupMembership.user_id == user_id, UserGroup.room_id == room_id)
    ).all()
    return list(rows)


def _ip_allowed(ip: Optional[str], whitelist: List[str]) -> bool:
    if not ip:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    for entry in whitelist:
        try:
            if address in ipaddress.ip_network(entry, strict=False):
                return True
        except ValueError:
            logger.warning("Ignoring malformed ip_whitelist entry {!r}", entry)
    return False


def _restriction_violation(
    access: RoomAccess, room: Room, context: RequestContext, now: datetime
) -> Optional[str]:
    if access.expires_at is not None and access.expires_at <= now:
        return "access_expired"
    if access.ip_whitelist and not _ip_allowed(context.ip, access.ip_whitelist):
        return "ip_not_whitelisted"
    if access.allowed_countries:
        allowed = {c.upper() for c in access.allowed_countries}
        if not context.country or context.country.upper() not in allowed:
            return "country_not_allowed"
    if room.require_nda and access.role != Role.ROOM_OWNER and access.nda_accepted_at is None:
        return "nda_not_accepted"
    return None


def _apply_scoped_rules(
    session: Session,
    flags: Dict[str, bool],
    user_id: int,
    room_id: int,
    folder_id: Optional[int],
) -> Dict[str, bool]:
    chain = folder_chain(session, folder_id)
    if not chain:
        return flags
    group_ids = user_group_ids(session, user_id, room_id)
    chain_ids = [f.id for f in chain]
    subject = col(FolderPermission.user_id) == user_id
    if group_ids:
        subject = subject | col(FolderPermission.group_id).in_(group_ids)
    rules = session.exec(
        select(FolderPermission).where(
            col(FolderPermission.folder_id).in_(chain_ids), subject
        )
    ).all()
    by_folder: Dict[int, List[FolderPermission]] = {}
    for rule in rules:
        by_folder.setdefault(rule.folder_id, []).append(rule)
    for folder_id_in_chain in chain_ids:
        for rule in by_folder.get(folder_id_in_chain, []):
            for flag in SCOPED_FLAGS:
                value = getattr(rule, flag)
                if value is not None:
                    flags[flag] = flags[flag] and value
    return flags


def resolve(
    session: Session,
    user_id: int,
    room: Room,
    *,
    folder_id: Optional[int] = None,
    file: Optional[File] = None,
    context: Optional[RequestContext] = None,
    now: Optional[datetime] = None,
) -> EffectiveCapabilities:
    """Compute the capabilities of ``user_id`` in ``room``, optionally scoped to a folder or file."""
    context = context or RequestContext()
    now = now or utcnow()

    if file is not None:
        if file.room_id != room.id:
            return EffectiveCapabilities.none("file_outside_room")
        folder_id = file.folder_id
    elif folder_id is not None:
        folder = session.get(Folder, folder_id)
        if folder is None or folder.room_id != room.id:
            return EffectiveCapabilities.none("folder_outside_room")

    access = get_access(session, user_id, room.id)
    if access is None:
        return EffectiveCapabilities.none("no_room_access")
    if not access.can_view:
        return EffectiveCapabilities.none("view_disabled", role=access.role)

    if room.status != RoomStatus.ACTIVE:
        return EffectiveCapabilities.none(
            f"room_{room.status.value.lower()}", role=access.role, room_expired=True
        )
    if room.expires_at is not None and room.expires_at <= now:
        return EffectiveCapabilities.none("room_expired", role=access.role, room_expired=True)

    flags = {flag: bool(getattr(access, flag)) for flag in CAPABILITY_FLAGS}
    for flag, policy_attr in POLICY_GATES.items():
        flags[flag] = flags[flag] and bool(getattr(room, policy_attr))

    override = ROLE_OVERRIDES.get(access.role, RoleOverride(forced={}))
    if not override.exempt_from_scoped_rules:
        flags = _apply_scoped_rules(session, flags, user_id, room.id, folder_id)
    flags.update(override.forced)

    violation = _restriction_violation(access, room, context, now)
    if violation:
        return EffectiveCapabilities.none(violation, role=access.role)
    if not flags["can_view"]:
        return EffectiveCapabilities.none("view_denied_by_folder_rule", role=access.role)

    return EffectiveCapabilities(
        **flags, requires_watermark=override.force_watermark, role=access.role
    )


def require(caps: EffectiveCapabilities, capability: str) -> EffectiveCapabilities:
    """Raise the generic denial unless ``capability`` is effective."""
    if caps.room_expired:
        raise RoomExpired(caps.denial_reason or "room_expired")
    if not getattr(caps, capability, False):
        raise PermissionDenied(caps.denial_reason or f"missing_{capability}")
    return caps


def can_manage(
    session: Session,
    user_id: int,
    room: Room,
    context: Optional[RequestContext] = None,
) -> bool:
    return resolve(session, user_id, room, context=context).manages_room


def require_manager(caps: EffectiveCapabilities) -> EffectiveCapabilities:
    if caps.room_expired:
        raise RoomExpired(caps.denial_reason or "room_expired")
    if not caps.manages_room:
        raise PermissionDenied(caps.denial_reason or "missing_room_management")
    return caps


def apply_role(access: RoomAccess, role: Role) -> RoomAccess:
    """Reset ``access`` to the defaults of ``role``."""
    access.role = role
    for flag, value in role_defaults(role).items():
        setattr(access, flag, value)
    access.updated_at = utcnow()
    return access


