"""
Access request workflow: users without room access ask, room managers decide.

A request is PENDING until reviewed once; APPROVED and DENIED are terminal.
Notifications go out only after the state change is committed and can never
undo it.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from sqlmodel import Session, col, or_, select

from . import audit
from .audit import RequestContext
from .exceptions import DuplicateRequest, InvalidState, NotFound, PermissionDenied
from .logging import get_logger
from .models import (
    AccessRequest,
    Folder,
    RequestStatus,
    Role,
    Room,
    RoomAccess,
    User,
    utcnow,
)
from .notifications import Notifier, dispatch
from .permissions import apply_role, get_access, require_manager, resolve

logger = get_logger(__name__)


class Decision(str, Enum):
    APPROVE = "APPROVE"
    DENY = "DENY"


def manager_emails(session: Session, room_id: int) -> List[str]:
    rows = session.exec(
        select(User.email)
        .join(RoomAccess, col(RoomAccess.user_id) == col(User.id))
        .where(
            RoomAccess.room_id == room_id,
            RoomAccess.can_view == True,  # noqa: E712
            or_(
                RoomAccess.role == Role.ROOM_OWNER,
                RoomAccess.can_manage_users == True,  # noqa: E712
                RoomAccess.can_manage_room == True,  # noqa: E712
            ),
        )
    ).all()
    return sorted(set(rows))


class AccessRequestWorkflow:
    def __init__(self, notifier: Notifier) -> None:
        self.notifier = notifier

    async def create(
        self,
        session: Session,
        user: User,
        room: Room,
        folder_id: Optional[int] = None,
        reason: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> AccessRequest:
        if folder_id is not None:
            folder = session.get(Folder, folder_id)
            if folder is None or folder.room_id != room.id:
                raise NotFound("Folder not found")

        access = get_access(session, user.id, room.id)  # type: ignore[arg-type]
        if folder_id is None and access is not None and access.can_view:
            raise DuplicateRequest("You already have access to this room")

        pending = session.exec(
            select(AccessRequest).where(
                AccessRequest.user_id == user.id,
                AccessRequest.room_id == room.id,
                AccessRequest.folder_id == folder_id,
                AccessRequest.status == RequestStatus.PENDING,
            )
        ).first()
        if pending is not None:
            raise DuplicateRequest()

        request = AccessRequest(
            user_id=user.id,  # type: ignore[arg-type]
            room_id=room.id,  # type: ignore[arg-type]
            folder_id=folder_id,
            reason=reason,
        )
        session.add(request)
        session.flush()
        audit.append(
            session,
            "ACCESS_REQUEST_CREATE",
            resource_type="access_request",
            resource_id=request.id,
            room_id=room.id,
            actor_id=user.id,
            context=context,
            details={"folder_id": folder_id, "has_reason": bool(reason)},
        )
        session.commit()
        session.refresh(request)

        await dispatch(
            self.notifier,
            manager_emails(session, room.id),  # type: ignore[arg-type]
            "access_request_created",
            {
                "request_id": request.id,
                "room_id": room.id,
                "room_name": room.name,
                "requester_email": user.email,
                "requester_name": user.display_name,
                "reason": reason or "",
            },
        )
        return request

    async def review(
        self,
        session: Session,
        reviewer: User,
        request_id: int,
        decision: Decision,
        role: Optional[Role] = None,
        message: Optional[str] = None,
        context: Optional[RequestContext] = None,
    ) -> AccessRequest:
        request = session.get(AccessRequest, request_id)
        if request is None:
            raise NotFound("Access request not found")
        room = session.get(Room, request.room_id)
        if room is None:
            raise NotFound("Access request not found")

        action = (
            "ACCESS_REQUEST_APPROVE" if decision == Decision.APPROVE else "ACCESS_REQUEST_DENY"
        )
        with audit.guard(
            session,
            action,
            resource_type="access_request",
            resource_id=request.id,
            room_id=room.id,
            actor_id=reviewer.id,
            context=context,
        ) as scope:
            require_manager(resolve(session, reviewer.id, room, context=context))  # type: ignore[arg-type]
            if request.status != RequestStatus.PENDING:
                raise InvalidState()

            scope.details.update({"requester_id": request.user_id, "decision": decision.value})
            now = utcnow()
            if decision == Decision.APPROVE:
                granted = role or Role.VIEWER
                if granted == Role.ROOM_OWNER:
                    raise PermissionDenied("owner_role_not_grantable")
                self._grant(session, request, granted)
                request.granted_role = granted
                request.status = RequestStatus.APPROVED
                scope.details["role"] = granted.value
            else:
                request.status = RequestStatus.DENIED
            request.reviewed_by = reviewer.id
            request.reviewed_at = now
            session.add(request)

        session.refresh(request)
        requester = session.get(User, request.user_id)
        if requester is not None:
            await dispatch(
                self.notifier,
                [requester.email],
                "access_request_reviewed",
                {
                    "request_id": request.id,
                    "room_id": room.id,
                    "room_name": room.name,
                    "approved": request.status == RequestStatus.APPROVED,
                    "reviewer_name": reviewer.display_name,
                    "message": message or "",
                },
            )
        return request

    def _grant(self, session: Session, request: AccessRequest, role: Role) -> RoomAccess:
        """Create the requester's access row, or re-enable a disabled one, seeded from role defaults."""
        access = get_access(session, request.user_id, request.room_id)
        if access is None:
            access = apply_role(RoomAccess(user_id=request.user_id, room_id=request.room_id), role)
        elif not access.can_view:
            apply_role(access, role)
        else:
            logger.info(
                "User {} already holds access to room {}; keeping role {}",
                request.user_id,
                request.room_id,
                access.role,
            )
        session.add(access)
        return access

    def list_pending(
        self,
        session: Session,
        reviewer: User,
        room: Room,
        context: Optional[RequestContext] = None,
    ) -> List[AccessRequest]:
        with audit.guard(
            session,
            "ACCESS_REQUEST_LIST",
            resource_type="room",
            resource_id=room.id,
            room_id=room.id,
            actor_id=reviewer.id,
            context=context,
            record_success=False,
        ):
            require_manager(resolve(session, reviewer.id, room, context=context))  # type: ignore[arg-type]
        return list(
            session.exec(
                select(AccessRequest)
                .where(
                    AccessRequest.room_id == room.id,
                    AccessRequest.status == RequestStatus.PENDING,
                )
                .order_by(col(AccessRequest.created_at))
            ).all()
        )


def serialize(request: AccessRequest) -> Dict[str, Any]:
    return {
        "id": request.id,
        "user_id": request.user_id,
        "room_id": request.room_id,
        "folder_id": request.folder_id,
        "reason": request.reason,
        "status": request.status.value,
        "granted_role": request.granted_role.value if request.granted_role else None,
        "reviewed_by": request.reviewed_by,
        "reviewed_at": request.reviewed_at.isoformat() if request.reviewed_at else None,
        "created_at": request.created_at.isoformat(),
    }
