"""
Append-only audit trail.

Security operations run inside :func:`guard`, which writes exactly one event
per operation: the action itself on success, ``<ACTION>_DENIED`` with the
internal reason when a :class:`SecurityDenial` escapes. Both are committed
before control returns to the caller. There is no update or
delete API.
"""

from collections import Counter
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional
import json

from sqlmodel import Session, col, select

from .exceptions import SecurityDenial
from .logging import get_logger
from .models import AuditEvent

logger = get_logger(__name__)

# Keys whose values are user-authored content (notes, Q&A, messages) rather than metadata
PRIVATE_DETAIL_KEYS = frozenset(
    {"content", "note", "note_content", "question", "answer", "body", "text", "message"}
)


@dataclass
class RequestContext:
    ip: Optional[str] = None
    user_agent: Optional[str] = None
    country: Optional[str] = None


@dataclass
class AuditScope:
    """Mutable event draft handed to the body of a guarded operation."""

    resource_type: str
    resource_id: Optional[Any] = None
    room_id: Optional[int] = None
    actor_id: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)


def append(
    session: Session,
    action: str,
    *,
    resource_type: str,
    resource_id: Optional[Any] = None,
    room_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    context: Optional[RequestContext] = None,
    details: Optional[Dict[str, Any]] = None,
) -> AuditEvent:
    """Stage an event in the session. The caller's commit makes it durable."""
    event = AuditEvent(
        actor_id=actor_id,
        action=action,
        resource_type=resource_type,
        resource_id=str(resource_id) if resource_id is not None else None,
        room_id=room_id,
        ip=context.ip if context else None,
        user_agent=context.user_agent if context else None,
        details_json=json.dumps(details, default=str, sort_keys=True) if details else None,
    )
    session.add(event)
    return event


def record(session: Session, action: str, **kwargs: Any) -> AuditEvent:
    """Append and commit immediately."""
    event = append(session, action, **kwargs)
    session.commit()
    return event


@contextmanager
def guard(
    session: Session,
    action: str,
    *,
    resource_type: str,
    resource_id: Optional[Any] = None,
    room_id: Optional[int] = None,
    actor_id: Optional[int] = None,
    context: Optional[RequestContext] = None,
    record_success: bool = True,
) -> Iterator[AuditScope]:
    """
    Run a security action and leave its audit trail.

    A :class:`SecurityDenial` escaping the block discards staged changes,
    commits ``<ACTION>_DENIED`` with the internal reason and re-raises.
    Informational reads pass ``record_success=False`` so only their
    denials are written.
    """
    scope = AuditScope(
        resource_type=resource_type,
        resource_id=resource_id,
        room_id=room_id,
        actor_id=actor_id,
    )
    try:
        yield scope
    except SecurityDenial as exc:
        session.rollback()
        details = dict(scope.details)
        details.update({"denial": type(exc).__name__, "reason": exc.reason})
        record(
            session,
            f"{action}_DENIED",
            resource_type=scope.resource_type,
            resource_id=scope.resource_id,
            room_id=scope.room_id,
            actor_id=scope.actor_id,
            context=context,
            details=details,
        )
        logger.warning(
            "{} denied for actor={} resource={}:{} reason={}",
            action,
            scope.actor_id,
            scope.resource_type,
            scope.resource_id,
            exc.reason,
        )
        raise
    else:
        if record_success:
            record(
                session,
                action,
                resource_type=scope.resource_type,
                resource_id=scope.resource_id,
                room_id=scope.room_id,
                actor_id=scope.actor_id,
                context=context,
                details=scope.details,
            )


@dataclass
class AuditFilters:
    room_id: Optional[int] = None
    actor_id: Optional[int] = None
    action: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: int = 1000


def _filtered(filters: AuditFilters):
    stmt = select(AuditEvent)
    if filters.room_id is not None:
        stmt = stmt.where(AuditEvent.room_id == filters.room_id)
    if filters.actor_id is not None:
        stmt = stmt.where(AuditEvent.actor_id == filters.actor_id)
    if filters.action:
        stmt = stmt.where(AuditEvent.action == filters.action)
    if filters.resource_type:
        stmt = stmt.where(AuditEvent.resource_type == filters.resource_type)
    if filters.resource_id is not None:
        stmt = stmt.where(AuditEvent.resource_id == str(filters.resource_id))
    if filters.since is not None:
        stmt = stmt.where(AuditEvent.created_at >= filters.since)
    if filters.until is not None:
        stmt = stmt.where(AuditEvent.created_at <= filters.until)
    return stmt


def public_details(event: AuditEvent) -> Dict[str, Any]:
    if not event.details_json:
        return {}
    details = json.loads(event.details_json)
    return {k: v for k, v in details.items() if k not in PRIVATE_DETAIL_KEYS}


def serialize(event: AuditEvent) -> Dict[str, Any]:
    return {
        "id": event.id,
        "actor_id": event.actor_id,
        "action": event.action,
        "resource_type": event.resource_type,
        "resource_id": event.resource_id,
        "room_id": event.room_id,
        "ip": event.ip,
        "created_at": event.created_at.isoformat(),
        "details": public_details(event),
    }


def query(session: Session, filters: AuditFilters) -> List[Dict[str, Any]]:
    """Raw event stream for compliance export, oldest first."""
    stmt = _filtered(filters).order_by(col(AuditEvent.created_at), col(AuditEvent.id))
    rows = session.exec(stmt.limit(filters.limit)).all()
    return [serialize(e) for e in rows]


def aggregate(session: Session, filters: AuditFilters) -> Dict[str, Any]:
    """Counts by action, day, actor and viewed file. Metadata only."""
    rows = session.exec(_filtered(filters)).all()
    by_action: Counter = Counter()
    by_day: Counter = Counter()
    by_user: Counter = Counter()
    by_file: Counter = Counter()
    for event in rows:
        by_action[event.action] += 1
        by_day[event.created_at.date().isoformat()] += 1
        if event.actor_id is not None:
            by_user[event.actor_id] += 1
        if event.action == "FILE_VIEW" and event.resource_id is not None:
            by_file[event.resource_id] += 1
    return {
        "total": len(rows),
        "by_action": dict(by_action),
        "by_day": dict(sorted(by_day.items())),
        "top_users": [{"user_id": u, "count": c} for u, c in by_user.most_common(10)],
        "top_files": [{"file_id": f, "count": c} for f, c in by_file.most_common(10)],
    }


def record_best_effort(session: Session, action: str, **kwargs: Any) -> None:
    """For informational reads: a failure to log must not fail the read."""
    try:
        record(session, action, **kwargs)
    except Exception:
        session.rollback()
        logger.exception("Best-effort audit write failed for {}", action)
