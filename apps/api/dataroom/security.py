"""
Security utilities: password hashing, share tokens and signed ephemeral grants.

Content pointers and folder grants are signed with itsdangerous (the same
signer Starlette's session cookie uses) and carry their own lifetime, so an
expired pointer is useless even if the artifact behind it still exists.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
import hashlib
import hmac
import secrets

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from passlib.context import CryptContext

from .config import settings
from .exceptions import LinkInvalid
from .models import utcnow

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

_POINTER_SALT = "content-pointer"
_GRANT_SALT = "folder-grant"

# 32 bytes from the OS CSPRNG = 256 bits of entropy
SHARE_TOKEN_BYTES = 32


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    """Constant-time check of a password against its hash."""
    try:
        return pwd_context.verify(password, hashed)
    except ValueError:
        return False


def new_share_token() -> str:
    return secrets.token_urlsafe(SHARE_TOKEN_BYTES)


def artifact_digest(*parts: str) -> str:
    """Keyed digest used to name temporary artifacts; unguessable without the secret."""
    message = "|".join(parts).encode("utf-8")
    return hmac.new(
        settings.pointer_secret.encode("utf-8"), message, hashlib.sha256
    ).hexdigest()


def _serializer(salt: str) -> URLSafeTimedSerializer:
    return URLSafeTimedSerializer(settings.pointer_secret, salt=salt)


@dataclass
class Pointer:
    token: str
    url: str
    expires_at: datetime


def issue_pointer(
    storage_key: str, ttl: int, *, filename: str, media_type: Optional[str]
) -> Pointer:
    payload = {"k": storage_key, "ttl": ttl, "n": filename, "m": media_type}
    token = _serializer(_POINTER_SALT).dumps(payload)
    url = settings.api_base_url.rstrip("/") + f"/api/content/{token}"
    return Pointer(token=token, url=url, expires_at=utcnow() + timedelta(seconds=ttl))


def _load_timed(salt: str, token: str, reason: str) -> Dict[str, Any]:
    """Verify signature and the lifetime embedded in the payload."""
    max_ttl = max(settings.content_pointer_ttl, settings.folder_grant_ttl)
    try:
        payload, signed_at = _serializer(salt).loads(
            token, max_age=max_ttl, return_timestamp=True
        )
    except SignatureExpired:
        raise LinkInvalid(f"{reason}_expired")
    except BadSignature:
        raise LinkInvalid(f"{reason}_bad_signature")
    age = (utcnow() - signed_at.replace(tzinfo=None)).total_seconds()
    if age > payload.get("ttl", 0):
        raise LinkInvalid(f"{reason}_expired")
    return payload


def load_pointer(token: str) -> Dict[str, Any]:
    return _load_timed(_POINTER_SALT, token, "pointer")


def issue_folder_grant(payload: Dict[str, Any]) -> str:
    return _serializer(_GRANT_SALT).dumps({**payload, "ttl": settings.folder_grant_ttl})


def load_folder_grant(token: str) -> Dict[str, Any]:
    return _load_timed(_GRANT_SALT, token, "grant")
