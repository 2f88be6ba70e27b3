"""
Domain exceptions.

Every security denial carries an internal ``reason`` that is written to the
audit trail and the log, while callers only ever see the public message.
"""

from typing import Optional


class DataRoomError(Exception):
    """Base application exception"""

    status_code = 500
    public_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.public_message
        super().__init__(self.message)


class SecurityDenial(DataRoomError):
    """A security-relevant refusal. Audited before it reaches the caller."""

    status_code = 403
    public_message = "Access denied"

    def __init__(self, reason: str, message: Optional[str] = None):
        self.reason = reason
        super().__init__(message)

    def __str__(self) -> str:
        return f"{type(self).__name__}({self.reason})"


class AuthenticationFailure(SecurityDenial):
    status_code = 401
    public_message = "Not authenticated"


class PermissionDenied(SecurityDenial):
    status_code = 403
    public_message = "Access denied"


class RoomExpired(PermissionDenied):
    """Room closed or past its expiry. Rendered exactly like PermissionDenied."""


class LinkInvalid(SecurityDenial):
    status_code = 404
    public_message = "Link is invalid or has expired"


class ConcurrencyConflict(LinkInvalid):
    """Lost the race for the last view of a share link."""


class InvalidState(DataRoomError):
    status_code = 409
    public_message = "Request has already been reviewed"


class Conflict(DataRoomError):
    status_code = 409
    public_message = "Already exists"


class DuplicateRequest(Conflict):
    public_message = "You already have a pending access request"


class NotFound(DataRoomError):
    status_code = 404
    public_message = "Not found"


class RenderingFailure(DataRoomError):
    """Raised inside the watermark pipeline; always recovered by serving the original."""

    public_message = "Rendering failed"


class NotificationFailure(DataRoomError):
    """Raised by notifiers; always recovered and logged by the dispatcher."""

    public_message = "Notification failed"
