"""
External share links: bearer tokens bounded by time, view count and an
optional password.

Redemption is fail-closed. Every failed check surfaces as the same
:class:`LinkInvalid`; the precise reason goes to the audit trail only. The
view counter is advanced by one conditional UPDATE so concurrent redemptions
can never exceed ``max_views``.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field as PydField
from sqlalchemy import update
from sqlmodel import Session, col, or_, select

from . import audit
from .audit import RequestContext
from .config import settings
from .exceptions import ConcurrencyConflict, LinkInvalid, NotFound, PermissionDenied
from .models import (
    File,
    Folder,
    Room,
    RoomStatus,
    ShareLink,
    ShareTarget,
    User,
    as_naive_utc,
    utcnow,
)
from .notifications import Notifier, dispatch
from .permissions import require, resolve
from .security import hash_password, new_share_token, verify_password


class SharePolicy(BaseModel):
    expires_at: Optional[datetime] = None
    max_views: Optional[int] = PydField(default=None, ge=1)
    password: Optional[str] = None
    allow_download: bool = True
    allow_print: bool = True
    require_auth: bool = False
    recipient_email: Optional[str] = None
    recipient_name: Optional[str] = None
    message: Optional[str] = None


@dataclass
class IssuedLink:
    share_id: int
    token: str
    share_url: str


@dataclass
class Redemption:
    """Outcome of a successful consume: the permissions frozen at issue time plus the target."""

    share_id: int
    room_id: int
    target_type: ShareTarget
    file_id: Optional[int]
    folder_id: Optional[int]
    allow_download: bool
    allow_print: bool
    recipient_email: Optional[str]
    recipient_name: Optional[str]
    current_views: int


def share_url(link: ShareLink) -> str:
    base = settings.web_base_url.rstrip("/")
    if link.target_type == ShareTarget.FOLDER:
        return f"{base}/shared/folder/{link.token}"
    return f"{base}/share/{link.token}"


def _target_room(session: Session, target_type: ShareTarget, target_id: int) -> Room:
    target: Any
    if target_type == ShareTarget.FILE:
        target = session.get(File, target_id)
    else:
        target = session.get(Folder, target_id)
    room = session.get(Room, target.room_id) if target is not None else None
    if room is None:
        raise PermissionDenied("share_target_not_found")
    return room


def issue(
    session: Session,
    creator: User,
    target_type: ShareTarget,
    target_id: int,
    policy: SharePolicy,
    context: Optional[RequestContext] = None,
) -> IssuedLink:
    with audit.guard(
        session,
        "SHARE_LINK_ISSUE",
        resource_type=target_type.value.lower(),
        resource_id=target_id,
        actor_id=creator.id,
        context=context,
    ) as scope:
        room = _target_room(session, target_type, target_id)
        scope.room_id = room.id
        caps = resolve(
            session,
            creator.id,  # type: ignore[arg-type]
            room,
            file=session.get(File, target_id) if target_type == ShareTarget.FILE else None,
            folder_id=target_id if target_type == ShareTarget.FOLDER else None,
            context=context,
        )
        require(caps, "can_invite")

        link = ShareLink(
            token=new_share_token(),
            target_type=target_type,
            file_id=target_id if target_type == ShareTarget.FILE else None,
            folder_id=target_id if target_type == ShareTarget.FOLDER else None,
            room_id=room.id,  # type: ignore[arg-type]
            created_by=creator.id,  # type: ignore[arg-type]
            recipient_email=policy.recipient_email.lower() if policy.recipient_email else None,
            recipient_name=policy.recipient_name,
            message=policy.message,
            max_views=policy.max_views,
            expires_at=as_naive_utc(policy.expires_at),
            password_hash=hash_password(policy.password) if policy.password else None,
            # A link never grants more than its creator holds
            allow_download=policy.allow_download and caps.can_download,
            allow_print=policy.allow_print and caps.can_print,
            require_auth=policy.require_auth,
        )
        session.add(link)
        session.flush()
        scope.details.update(
            {
                "share_id": link.id,
                "expires_at": link.expires_at,
                "max_views": link.max_views,
                "has_password": link.password_hash is not None,
                "require_auth": link.require_auth,
                "directed": link.recipient_email is not None,
                "allow_download": link.allow_download,
                "allow_print": link.allow_print,
            }
        )
        issued = IssuedLink(share_id=link.id, token=link.token, share_url=share_url(link))  # type: ignore[arg-type]
    return issued


async def share(
    session: Session,
    notifier: Notifier,
    creator: User,
    target_type: ShareTarget,
    target_id: int,
    policy: SharePolicy,
    context: Optional[RequestContext] = None,
) -> IssuedLink:
    """Issue a link and, when it is addressed to someone, send them the invitation.

    Delivery happens after the link is committed and never undoes it.
    """
    issued = issue(session, creator, target_type, target_id, policy, context)
    link = session.get(ShareLink, issued.share_id)
    if link is None or not link.recipient_email:
        return issued
    target: Any = session.get(File if target_type == ShareTarget.FILE else Folder, target_id)
    room = session.get(Room, link.room_id)
    await dispatch(
        notifier,
        [link.recipient_email],
        "share_link_issued",
        {
            "share_url": issued.share_url,
            "target_type": target_type.value,
            "target_name": target.name if target is not None else "",
            "room_name": room.name if room is not None else "",
            "sender_name": creator.display_name,
            "recipient_name": link.recipient_name or "",
            "message": link.message or "",
            "expires_at": link.expires_at.isoformat() if link.expires_at else None,
            "has_password": link.password_hash is not None,
        },
    )
    return issued


def room_available(room: Optional[Room], now: datetime) -> bool:
    """Links into a closed, archived or expired room stop working."""
    return room is not None and room.status == RoomStatus.ACTIVE and (
        room.expires_at is None or room.expires_at > now
    )


def _check(link: Optional[ShareLink], session: Session, password: Optional[str],
           requester: Optional[User], now: datetime) -> ShareLink:
    """Validation steps in order; the first failure wins."""
    if link is None:
        raise LinkInvalid("not_found")
    if not link.is_active:
        raise LinkInvalid("revoked")
    if link.expires_at is not None and link.expires_at <= now:
        raise LinkInvalid("expired")
    if not room_available(session.get(Room, link.room_id), now):
        raise LinkInvalid("room_unavailable")
    if link.max_views is not None and link.current_views >= link.max_views:
        raise LinkInvalid("view_limit_reached")
    if link.password_hash is not None:
        if not password or not verify_password(password, link.password_hash):
            raise LinkInvalid("bad_password")
    if link.require_auth:
        if requester is None or not requester.is_active:
            raise LinkInvalid("authentication_required")
        if link.recipient_email and requester.email.lower() != link.recipient_email:
            raise LinkInvalid("recipient_mismatch")
    return link


def consume(
    session: Session,
    token: str,
    password: Optional[str] = None,
    requester: Optional[User] = None,
    context: Optional[RequestContext] = None,
) -> Redemption:
    with audit.guard(
        session,
        "SHARE_LINK_CONSUME",
        resource_type="share_link",
        actor_id=requester.id if requester else None,
        context=context,
    ) as scope:
        now = utcnow()
        link = session.exec(select(ShareLink).where(ShareLink.token == token)).first()
        if link is not None:
            scope.resource_id = link.id
            scope.room_id = link.room_id
        link = _check(link, session, password, requester, now)

        # Re-checks the limits in the same statement that increments
        stmt = (
            update(ShareLink)
            .where(
                col(ShareLink.id) == link.id,
                col(ShareLink.is_active) == True,  # noqa: E712
                or_(col(ShareLink.expires_at).is_(None), col(ShareLink.expires_at) > now),
                or_(
                    col(ShareLink.max_views).is_(None),
                    col(ShareLink.current_views) < col(ShareLink.max_views),
                ),
            )
            .values(current_views=col(ShareLink.current_views) + 1, last_accessed_at=now)
            .execution_options(synchronize_session=False)
        )
        result = session.exec(stmt)  # type: ignore[call-overload]
        if result.rowcount != 1:
            raise ConcurrencyConflict("view_limit_race")
        session.refresh(link)

        scope.details.update(
            {"target_type": link.target_type.value, "views": link.current_views}
        )
        redemption = Redemption(
            share_id=link.id,  # type: ignore[arg-type]
            room_id=link.room_id,
            target_type=link.target_type,
            file_id=link.file_id,
            folder_id=link.folder_id,
            allow_download=link.allow_download,
            allow_print=link.allow_print,
            recipient_email=link.recipient_email,
            recipient_name=link.recipient_name,
            current_views=link.current_views,
        )
    return redemption


def revoke(
    session: Session,
    actor: User,
    share_id: int,
    context: Optional[RequestContext] = None,
) -> ShareLink:
    with audit.guard(
        session,
        "SHARE_LINK_REVOKE",
        resource_type="share_link",
        resource_id=share_id,
        actor_id=actor.id,
        context=context,
    ) as scope:
        link = session.get(ShareLink, share_id)
        if link is None:
            raise PermissionDenied("share_not_found")
        scope.room_id = link.room_id
        if link.created_by != actor.id:
            room = session.get(Room, link.room_id)
            caps = resolve(session, actor.id, room, context=context)  # type: ignore[arg-type]
            if not caps.manages_room:
                raise PermissionDenied("not_creator_or_manager")
        if link.is_active:
            link.is_active = False
            link.revoked_at = utcnow()
            link.revoked_by = actor.id
            session.add(link)
        else:
            scope.details["already_revoked"] = True
    session.refresh(link)
    return link


def serialize(link: ShareLink) -> Dict[str, Any]:
    return {
        "id": link.id,
        "target_type": link.target_type.value,
        "file_id": link.file_id,
        "folder_id": link.folder_id,
        "share_url": share_url(link),
        "recipient_email": link.recipient_email,
        "recipient_name": link.recipient_name,
        "max_views": link.max_views,
        "current_views": link.current_views,
        "expires_at": link.expires_at.isoformat() if link.expires_at else None,
        "has_password": link.password_hash is not None,
        "allow_download": link.allow_download,
        "allow_print": link.allow_print,
        "require_auth": link.require_auth,
        "is_active": link.is_active,
        "created_by": link.created_by,
        "last_accessed_at": link.last_accessed_at.isoformat() if link.last_accessed_at else None,
        "created_at": link.created_at.isoformat(),
    }


def list_links(
    session: Session,
    viewer: User,
    target_type: ShareTarget,
    target_id: int,
    context: Optional[RequestContext] = None,
) -> List[ShareLink]:
    """Links on a target: the viewer's own, or all of them for room managers."""
    try:
        room = _target_room(session, target_type, target_id)
    except PermissionDenied:
        raise NotFound("Target not found")
    with audit.guard(
        session,
        "SHARE_LINK_LIST",
        resource_type=target_type.value.lower(),
        resource_id=target_id,
        room_id=room.id,
        actor_id=viewer.id,
        context=context,
        record_success=False,
    ):
        caps = require(resolve(session, viewer.id, room, context=context), "can_view")  # type: ignore[arg-type]

    target_col = ShareLink.file_id if target_type == ShareTarget.FILE else ShareLink.folder_id
    stmt = select(ShareLink).where(
        ShareLink.target_type == target_type, target_col == target_id
    )
    if not caps.manages_room:
        stmt = stmt.where(ShareLink.created_by == viewer.id)
    return list(session.exec(stmt.order_by(col(ShareLink.created_at).desc())).all())
