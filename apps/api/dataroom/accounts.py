from typing import Optional

from sqlmodel import Session, select

from . import audit
from .audit import RequestContext
from .exceptions import AuthenticationFailure, Conflict, PermissionDenied
from .models import User, utcnow
from .security import hash_password, verify_password


def normalize_email(email: str) -> str:
    return email.strip().lower()


def find_user(session: Session, email: str) -> Optional[User]:
    return session.exec(select(User).where(User.email == normalize_email(email))).first()


def get_or_create_user(session: Session, email: str, name: str = "") -> User:
    """Upsert by email; invited users start without a password."""
    user = find_user(session, email)
    if user is None:
        user = User(email=normalize_email(email), name=name)
        session.add(user)
        session.flush()
    return user


def create_user(
    session: Session,
    email: str,
    password: Optional[str] = None,
    name: str = "",
    context: Optional[RequestContext] = None,
) -> User:
    existing = find_user(session, email)
    if existing is not None and existing.password_hash is not None:
        raise Conflict("An account with this email already exists")
    user = existing or User(email=normalize_email(email))
    user.name = name or user.name
    if password:
        user.password_hash = hash_password(password)
    session.add(user)
    session.flush()
    audit.append(
        session,
        "USER_REGISTER",
        resource_type="user",
        resource_id=user.id,
        actor_id=user.id,
        context=context,
    )
    session.commit()
    session.refresh(user)
    return user


def authenticate(
    session: Session,
    email: str,
    password: str,
    context: Optional[RequestContext] = None,
) -> User:
    """Password login. Every failure looks the same to the caller."""
    with audit.guard(session, "LOGIN", resource_type="user", context=context) as scope:
        user = find_user(session, email)
        if user is None:
            raise AuthenticationFailure("unknown_user")
        scope.resource_id = user.id
        scope.actor_id = user.id
        if not user.is_active:
            raise AuthenticationFailure("inactive_user")
        if user.password_hash is None or not verify_password(password, user.password_hash):
            raise AuthenticationFailure("bad_password")
        user.last_login_at = utcnow()
        session.add(user)
    session.refresh(user)
    return user


def impersonate(
    session: Session,
    admin: User,
    target_email: str,
    context: Optional[RequestContext] = None,
) -> User:
    with audit.guard(
        session, "IMPERSONATE", resource_type="user", actor_id=admin.id, context=context
    ) as scope:
        if not admin.is_platform_admin:
            raise PermissionDenied("not_platform_admin")
        target = find_user(session, target_email)
        if target is None or not target.is_active:
            raise PermissionDenied("target_not_found")
        if target.is_platform_admin:
            raise PermissionDenied("target_is_platform_admin")
        scope.resource_id = target.id
        scope.details["target_email"] = target.email
    return target
