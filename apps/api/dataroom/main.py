from dataclasses import asdict
from datetime import datetime
from typing import Optional
from urllib.parse import quote

from fastapi import (
    BackgroundTasks,
    FastAPI,
    File as UploadField,
    Form,
    HTTPException,
    Request,
    UploadFile,
)
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.middleware.sessions import SessionMiddleware
from sqlmodel import Session

from . import accounts, audit, rooms, sharing
from .access_requests import AccessRequestWorkflow, Decision, serialize as serialize_request
from .audit import AuditFilters, RequestContext
from .config import settings
from .db import init_db, engine
from .exceptions import DataRoomError
from .gateway import ContentGateway, file_metadata
from .logging import get_logger, setup_logging
from .models import Role, ShareTarget, User, as_naive_utc
from .notifications import get_notifier
from .permissions import require, resolve
from .storage import get_storage
from .watermark import WatermarkRenderer, run_cleanup

logger = get_logger(__name__)

app = FastAPI(title=settings.app_name)

# CORS for web app (handles OPTIONS preflight)
origins = [settings.web_base_url.rstrip("/")]
if "localhost" in settings.web_base_url:
    origins += ["http://localhost:3000", "http://127.0.0.1:3000"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(
    SessionMiddleware,
    secret_key=settings.session_secret,
    same_site="lax",
    https_only=settings.https_only_cookies,
)


def get_session_email(request: Request, fallback_email: Optional[str]) -> Optional[str]:
    """
    Extract user email from session, with optional fallback for dev/testing.
    Only uses fallback when ALLOW_EMAIL_PARAM is enabled.
    """
    sess_email = None
    sess = request.scope.get("session")
    if isinstance(sess, dict):
        sess_email = sess.get("email")
    if sess_email:
        return sess_email
    # Only allow fallback via query param when explicitly enabled (dev/tests)
    if settings.allow_email_param:
        return fallback_email
    return None


@app.middleware("http")
async def add_security_headers(request: Request, call_next):
    """Add security headers to all responses."""
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault(
        "Permissions-Policy", "geolocation=(), microphone=(), camera=()"
    )
    # Only meaningful over HTTPS; harmless otherwise
    response.headers.setdefault(
        "Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload"
    )
    return response


@app.exception_handler(DataRoomError)
async def dataroom_error_handler(request: Request, exc: DataRoomError) -> JSONResponse:
    """Domain errors carry their own status; only the public message is returned."""
    return JSONResponse({"detail": exc.message}, status_code=exc.status_code)


@app.on_event("startup")
async def on_startup() -> None:
    setup_logging()
    init_db()
    await run_cleanup(get_storage())
    logger.info("{} started", settings.app_name)


@app.get("/healthz")
def healthz() -> JSONResponse:
    """Health check endpoint for monitoring and load balancers."""
    return JSONResponse({"status": "ok"})


def _request_context(request: Request) -> RequestContext:
    return RequestContext(
        ip=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        country=request.headers.get(settings.country_header),
    )


def _get_active_user(
    session: Session, request: Request, fallback_email: Optional[str]
) -> Optional[User]:
    """Retrieve the active user from session or fallback email parameter."""
    active_email = get_session_email(request, fallback_email)
    if not active_email:
        return None
    user = accounts.find_user(session, active_email)
    if user is None or not user.is_active:
        return None
    return user


def _require_user(
    session: Session, request: Request, fallback_email: Optional[str]
) -> User:
    user = _get_active_user(session, request, fallback_email)
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return user


def _gateway() -> ContentGateway:
    return ContentGateway(WatermarkRenderer(get_storage()))


def _workflow() -> AccessRequestWorkflow:
    return AccessRequestWorkflow(get_notifier())


# -----------------
# Auth
# -----------------


class RegisterRequest(BaseModel):
    email: str
    password: str
    name: str = ""


class LoginRequest(BaseModel):
    email: str
    password: str


class ImpersonateRequest(BaseModel):
    email: str


@app.post("/auth/register")
def register(req: RegisterRequest, request: Request) -> JSONResponse:
    if "@" not in req.email or len(req.password) < 8:
        raise HTTPException(status_code=400, detail="A valid email and an 8+ character password are required")
    with Session(engine) as session:
        user = accounts.create_user(
            session, req.email, req.password, req.name, context=_request_context(request)
        )
        return JSONResponse({"id": user.id, "email": user.email, "name": user.name})


@app.post("/auth/login")
def login(req: LoginRequest, request: Request) -> JSONResponse:
    """Password login; stores the email in the signed session cookie."""
    with Session(engine) as session:
        user = accounts.authenticate(
            session, req.email, req.password, context=_request_context(request)
        )
        request.session.clear()
        request.session["email"] = user.email
        return JSONResponse({"email": user.email, "name": user.name})


@app.get("/auth/me")
def auth_me(request: Request) -> JSONResponse:
    """Return the current user's email from session, or null if not authenticated."""
    email = get_session_email(request, None)
    impersonator = request.session.get("impersonator") if email else None
    return JSONResponse({"email": email, "impersonator": impersonator})


@app.post("/auth/impersonate")
def impersonate(
    req: ImpersonateRequest, request: Request, email: Optional[str] = None
) -> JSONResponse:
    """Platform admins only. The switch is audited."""
    with Session(engine) as session:
        admin = _require_user(session, request, email)
        target = accounts.impersonate(
            session, admin, req.email, context=_request_context(request)
        )
        request.session["email"] = target.email
        request.session["impersonator"] = admin.email
        return JSONResponse({"email": target.email, "impersonator": admin.email})


@app.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Clear user session and log out."""
    request.session.clear()
    return JSONResponse({"ok": True})


# -----------------
# Rooms & RBAC APIs
# -----------------


class CreateRoomRequest(BaseModel):
    name: str
    description: Optional[str] = None


class AddMemberRequest(BaseModel):
    email: str
    role: Role = Role.VIEWER
    name: str = ""
    message: Optional[str] = None


class CreateFolderRequest(BaseModel):
    name: str
    parent_id: Optional[int] = None


class CreateGroupRequest(BaseModel):
    name: str
    description: Optional[str] = None


class GroupMemberRequest(BaseModel):
    user_id: int


@app.get("/api/rooms")
def list_rooms(request: Request, email: Optional[str] = None) -> JSONResponse:
    """List all data rooms the user can view, with their role in each room."""
    with Session(engine) as session:
        user = _require_user(session, request, email)
        return JSONResponse({"rooms": rooms.list_rooms(session, user)})


@app.post("/api/rooms")
def create_room(
    req: CreateRoomRequest, request: Request, email: Optional[str] = None
) -> JSONResponse:
    """Create a new data room. The creator becomes the owner."""
    with Session(engine) as session:
        user = _require_user(session, request, email)
        room = rooms.create_room(
            session, user, req.name, req.description, context=_request_context(request)
        )
        return JSONResponse(rooms.serialize_room(room, Role.ROOM_OWNER))


@app.patch("/api/rooms/{room_id}/settings")
def update_room_settings(
    room_id: int, req: rooms.RoomSettings, request: Request, email: Optional[str] = None
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        room = rooms.update_settings(
            session,
            user,
            rooms.get_room(session, room_id),
            req,
            context=_request_context(request),
        )
        return JSONResponse(rooms.serialize_room(room))


@app.post("/api/rooms/{room_id}/members")
async def add_member(
    room_id: int, req: AddMemberRequest, request: Request, email: Optional[str] = None
) -> JSONResponse:
    """Add a member to a data room. Requires invite or user-management rights."""
    with Session(engine) as session:
        actor = _require_user(session, request, email)
        access = await rooms.invite_member(
            session,
            get_notifier(),
            actor,
            rooms.get_room(session, room_id),
            req.email,
            req.role,
            req.name,
            message=req.message,
            context=_request_context(request),
        )
        return JSONResponse(rooms.serialize_access(access))


@app.get("/api/rooms/{room_id}/members")
def list_room_members(
    room_id: int, request: Request, email: Optional[str] = None
) -> JSONResponse:
    with Session(engine) as session:
        actor = _require_user(session, request, email)
        members = rooms.list_members(
            session, actor, rooms.get_room(session, room_id), context=_request_context(request)
        )
        return JSONResponse({"members": members})


@app.patch("/api/rooms/{room_id}/members/{user_id}")
def update_member(
    room_id: int,
    user_id: int,
    req: rooms.AccessUpdate,
    request: Request,
    email: Optional[str] = None,
) -> JSONResponse:
    with Session(engine) as session:
        actor = _require_user(session, request, email)
        access = rooms.update_permissions(
            session,
            actor,
            rooms.get_room(session, room_id),
            user_id,
            req,
            context=_request_context(request),
        )
        return JSONResponse(rooms.serialize_access(access))


@app.post("/api/rooms/{room_id}/nda")
def accept_nda(room_id: int, request: Request, email: Optional[str] = None) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        access = rooms.accept_nda(
            session, user, rooms.get_room(session, room_id), context=_request_context(request)
        )
        return JSONResponse({"nda_accepted_at": access.nda_accepted_at.isoformat()})  # type: ignore[union-attr]


@app.post("/api/rooms/{room_id}/folders")
def create_folder(
    room_id: int, req: CreateFolderRequest, request: Request, email: Optional[str] = None
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        folder = rooms.create_folder(
            session,
            user,
            rooms.get_room(session, room_id),
            req.name,
            req.parent_id,
            context=_request_context(request),
        )
        return JSONResponse(
            {"id": folder.id, "name": folder.name, "parent_id": folder.parent_id}
        )


@app.put("/api/rooms/{room_id}/folders/{folder_id}/permissions")
def set_folder_permission(
    room_id: int,
    folder_id: int,
    req: rooms.FolderRule,
    request: Request,
    email: Optional[str] = None,
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        rule = rooms.set_folder_permission(
            session,
            user,
            rooms.get_room(session, room_id),
            folder_id,
            req,
            context=_request_context(request),
        )
        return JSONResponse(
            {
                "id": rule.id,
                "folder_id": rule.folder_id,
                "user_id": rule.user_id,
                "group_id": rule.group_id,
                "can_view": rule.can_view,
                "can_download": rule.can_download,
                "can_print": rule.can_print,
                "can_upload": rule.can_upload,
                "can_edit": rule.can_edit,
            }
        )


@app.post("/api/rooms/{room_id}/groups")
def create_group(
    room_id: int, req: CreateGroupRequest, request: Request, email: Optional[str] = None
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        group = rooms.create_group(
            session,
            user,
            rooms.get_room(session, room_id),
            req.name,
            req.description,
            context=_request_context(request),
        )
        return JSONResponse({"id": group.id, "name": group.name})


@app.post("/api/rooms/{room_id}/groups/{group_id}/members")
def add_group_member(
    room_id: int,
    group_id: int,
    req: GroupMemberRequest,
    request: Request,
    email: Optional[str] = None,
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        membership = rooms.add_group_member(
            session,
            user,
            rooms.get_room(session, room_id),
            group_id,
            req.user_id,
            context=_request_context(request),
        )
        return JSONResponse({"group_id": membership.group_id, "user_id": membership.user_id})


@app.get("/api/rooms/{room_id}/files")
def room_files(room_id: int, request: Request, email: Optional[str] = None) -> JSONResponse:
    """List the files in a room that the user may view."""
    with Session(engine) as session:
        user = _require_user(session, request, email)
        files = rooms.list_files(
            session, user, rooms.get_room(session, room_id), context=_request_context(request)
        )
        return JSONResponse({"files": [file_metadata(f) for f in files]})


@app.post("/api/rooms/{room_id}/files")
async def upload_file(
    room_id: int,
    request: Request,
    upload: UploadFile = UploadField(...),
    folder_id: Optional[int] = Form(None),
    email: Optional[str] = None,
) -> JSONResponse:
    data = await upload.read()
    with Session(engine) as session:
        user = _require_user(session, request, email)
        file = await rooms.register_file(
            session,
            get_storage(),
            user,
            rooms.get_room(session, room_id),
            upload.filename or "file",
            data,
            mime_type=upload.content_type,
            folder_id=folder_id,
            context=_request_context(request),
        )
        payload = file_metadata(file)
        payload["sha256"] = file.sha256
        return JSONResponse(payload)


# -----------------
# Content
# -----------------


@app.get("/api/files/{file_id}/view")
async def view_file(
    file_id: int,
    request: Request,
    background_tasks: BackgroundTasks,
    email: Optional[str] = None,
) -> JSONResponse:
    """Resolve permissions and return a short-lived pointer to the (watermarked) document."""
    gateway = _gateway()
    with Session(engine) as session:
        user = _require_user(session, request, email)
        view = await gateway.view_file(session, user, file_id, _request_context(request))
    background_tasks.add_task(run_cleanup, gateway.storage)
    return JSONResponse(view.as_dict())


@app.get("/api/content/{pointer}")
async def content(pointer: str) -> Response:
    data, media_type, filename = await _gateway().open_pointer(pointer)
    return Response(
        content=data,
        media_type=media_type,
        headers={
            "Content-Disposition": f"inline; filename*=UTF-8''{quote(filename)}",
            "Cache-Control": "private, no-store",
        },
    )


# -----------------
# Share links
# -----------------


class CreateShareRequest(sharing.SharePolicy):
    target_type: ShareTarget
    target_id: int


class ConsumeShareRequest(BaseModel):
    password: Optional[str] = None


@app.post("/api/shares")
async def create_share(
    req: CreateShareRequest, request: Request, email: Optional[str] = None
) -> JSONResponse:
    policy = sharing.SharePolicy(**req.model_dump(exclude={"target_type", "target_id"}))
    with Session(engine) as session:
        user = _require_user(session, request, email)
        issued = await sharing.share(
            session,
            get_notifier(),
            user,
            req.target_type,
            req.target_id,
            policy,
            _request_context(request),
        )
        return JSONResponse(asdict(issued))


@app.get("/api/shares")
def list_shares(
    target_type: ShareTarget,
    target_id: int,
    request: Request,
    email: Optional[str] = None,
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        links = sharing.list_links(
            session, user, target_type, target_id, _request_context(request)
        )
        return JSONResponse({"shares": [sharing.serialize(link) for link in links]})


@app.delete("/api/shares/{share_id}")
def revoke_share(share_id: int, request: Request, email: Optional[str] = None) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        link = sharing.revoke(session, user, share_id, _request_context(request))
        return JSONResponse({"id": link.id, "is_active": link.is_active})


@app.post("/api/share/{token}")
async def open_share(
    token: str,
    request: Request,
    background_tasks: BackgroundTasks,
    req: Optional[ConsumeShareRequest] = None,
    email: Optional[str] = None,
) -> JSONResponse:
    """Redeem a share link. Authentication is optional unless the link requires it."""
    gateway = _gateway()
    with Session(engine) as session:
        requester = _get_active_user(session, request, email)
        result = await gateway.open_share(
            session,
            token,
            password=req.password if req else None,
            requester=requester,
            context=_request_context(request),
        )
    background_tasks.add_task(run_cleanup, gateway.storage)
    return JSONResponse(result)


@app.get("/api/shared/folder/{grant}/files/{file_id}")
async def view_shared_folder_file(
    grant: str, file_id: int, request: Request, background_tasks: BackgroundTasks
) -> JSONResponse:
    gateway = _gateway()
    with Session(engine) as session:
        result = await gateway.view_shared_folder_file(
            session, grant, file_id, _request_context(request)
        )
    background_tasks.add_task(run_cleanup, gateway.storage)
    return JSONResponse(result)


# -----------------
# Access requests
# -----------------


class AccessRequestBody(BaseModel):
    folder_id: Optional[int] = None
    reason: Optional[str] = None


class ReviewBody(BaseModel):
    decision: Decision
    role: Optional[Role] = None
    message: Optional[str] = None


@app.post("/api/rooms/{room_id}/access-requests")
async def request_access(
    room_id: int, req: AccessRequestBody, request: Request, email: Optional[str] = None
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        created = await _workflow().create(
            session,
            user,
            rooms.get_room(session, room_id),
            req.folder_id,
            req.reason,
            context=_request_context(request),
        )
        return JSONResponse(serialize_request(created))


@app.get("/api/rooms/{room_id}/access-requests")
def pending_access_requests(
    room_id: int, request: Request, email: Optional[str] = None
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        pending = _workflow().list_pending(
            session, user, rooms.get_room(session, room_id), context=_request_context(request)
        )
        return JSONResponse({"requests": [serialize_request(r) for r in pending]})


@app.post("/api/access-requests/{request_id}/review")
async def review_access_request(
    request_id: int, req: ReviewBody, request: Request, email: Optional[str] = None
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        reviewed = await _workflow().review(
            session,
            user,
            request_id,
            req.decision,
            role=req.role,
            message=req.message,
            context=_request_context(request),
        )
        return JSONResponse(serialize_request(reviewed))


# -----------------
# Audit
# -----------------


def _audit_filters(
    room_id: int,
    action: Optional[str],
    actor_id: Optional[int],
    since: Optional[datetime],
    until: Optional[datetime],
    limit: int = 1000,
) -> AuditFilters:
    return AuditFilters(
        room_id=room_id,
        action=action,
        actor_id=actor_id,
        since=as_naive_utc(since),
        until=as_naive_utc(until),
        limit=max(1, min(limit, 10000)),
    )


@app.get("/api/rooms/{room_id}/audit")
def room_audit(
    room_id: int,
    request: Request,
    email: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    limit: int = 1000,
) -> JSONResponse:
    """Raw event stream for compliance export."""
    with Session(engine) as session:
        user = _require_user(session, request, email)
        room = rooms.get_room(session, room_id)
        context = _request_context(request)
        with audit.guard(
            session,
            "AUDIT_EXPORT",
            resource_type="room",
            resource_id=room_id,
            room_id=room_id,
            actor_id=user.id,
            context=context,
        ) as scope:
            require(resolve(session, user.id, room, context=context), "can_view_audit")  # type: ignore[arg-type]
            filters = _audit_filters(room_id, action, actor_id, since, until, limit)
            events = audit.query(session, filters)
            scope.details.update({"count": len(events), "action": action})
        return JSONResponse({"events": events})


@app.get("/api/rooms/{room_id}/analytics")
def room_analytics(
    room_id: int,
    request: Request,
    email: Optional[str] = None,
    action: Optional[str] = None,
    actor_id: Optional[int] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> JSONResponse:
    with Session(engine) as session:
        user = _require_user(session, request, email)
        room = rooms.get_room(session, room_id)
        context = _request_context(request)
        audited = dict(
            resource_type="room",
            resource_id=room_id,
            room_id=room_id,
            actor_id=user.id,
            context=context,
        )
        with audit.guard(session, "ANALYTICS_VIEW", record_success=False, **audited):
            require(resolve(session, user.id, room, context=context), "can_view_audit")  # type: ignore[arg-type]
        summary = audit.aggregate(session, _audit_filters(room_id, action, actor_id, since, until))
        # Reporting reads are informational
        audit.record_best_effort(session, "ANALYTICS_VIEW", details={"action": action}, **audited)
        return JSONResponse(summary)
