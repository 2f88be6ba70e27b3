"""
Content gateway: the only path from a viewing request to document bytes.

Members go through :meth:`ContentGateway.view_file`; external recipients
through :meth:`ContentGateway.open_share`. Both resolve permissions per
request, watermark when the room (or the viewer's role) requires it, and
leave exactly one audit event for the attempt.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlmodel import Session, col, select

from . import audit, sharing
from .audit import RequestContext
from .exceptions import LinkInvalid, NotFound, PermissionDenied
from .models import File, Folder, Room, ShareLink, ShareTarget, User, utcnow
from .permissions import folder_chain, require, resolve
from .security import issue_folder_grant, load_folder_grant, load_pointer
from .storage import StorageBackend
from .watermark import RenderResult, ViewerContext, WatermarkRenderer


def file_metadata(file: File) -> Dict[str, Any]:
    return {
        "id": file.id,
        "name": file.name,
        "mime_type": file.mime_type,
        "size_bytes": file.size_bytes,
        "folder_id": file.folder_id,
        "room_id": file.room_id,
        "created_at": file.created_at.isoformat() if file.created_at else None,
    }


@dataclass
class FileView:
    pointer_url: str
    expires_at: datetime
    file: Dict[str, Any]
    can_download: bool
    can_print: bool
    watermarked: bool

    def as_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        return data


@dataclass
class FolderView:
    folder: Dict[str, Any]
    files: List[Dict[str, Any]]
    grant: str
    can_download: bool
    can_print: bool
    extra: Dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _now() -> datetime:
    # Second precision keeps the stamp identical to what is shown to the viewer
    return utcnow().replace(microsecond=0)


def folder_subtree_ids(session: Session, folder_id: int) -> List[int]:
    ids = [folder_id]
    frontier = [folder_id]
    while frontier:
        children = session.exec(
            select(Folder.id).where(col(Folder.parent_id).in_(frontier))
        ).all()
        frontier = [c for c in children if c not in ids]
        ids.extend(frontier)
    return ids


def _share_viewer(
    share_id: int,
    recipient_email: Optional[str],
    recipient_name: Optional[str],
    requester: Optional[User],
) -> Tuple[str, str]:
    if requester is not None:
        return requester.display_name, requester.email
    if recipient_email:
        return recipient_name or recipient_email, recipient_email
    return "Anonymous share link", f"share-{share_id}"


class ContentGateway:
    def __init__(self, renderer: WatermarkRenderer) -> None:
        self.renderer = renderer

    @property
    def storage(self) -> StorageBackend:
        return self.renderer.storage

    async def view_file(
        self,
        session: Session,
        user: User,
        file_id: int,
        context: Optional[RequestContext] = None,
    ) -> FileView:
        context = context or RequestContext()
        with audit.guard(
            session,
            "FILE_VIEW",
            resource_type="file",
            resource_id=file_id,
            actor_id=user.id,
            context=context,
        ) as scope:
            file = session.get(File, file_id)
            room = session.get(Room, file.room_id) if file is not None else None
            if file is None or room is None:
                raise PermissionDenied("file_not_found")
            scope.room_id = room.id
            caps = require(
                resolve(session, user.id, room, file=file, context=context),  # type: ignore[arg-type]
                "can_view",
            )
            viewer = ViewerContext(
                name=user.display_name,
                email=user.email,
                timestamp=_now(),
                room_name=room.name,
                ip=context.ip,
            )
            result = await self.renderer.render(
                session,
                file,
                room,
                viewer,
                actor_id=user.id,
                force=caps.requires_watermark,
                context=context,
            )
            scope.details.update(
                {"file_name": file.name, "watermarked": result.watermarked, "render": result.status}
            )
            view = FileView(
                pointer_url=result.pointer.url,
                expires_at=result.pointer.expires_at,
                file=file_metadata(file),
                can_download=caps.can_download,
                can_print=caps.can_print,
                watermarked=result.watermarked,
            )
        return view

    async def open_share(
        self,
        session: Session,
        token: str,
        password: Optional[str] = None,
        requester: Optional[User] = None,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        context = context or RequestContext()
        redemption = sharing.consume(session, token, password, requester, context)
        room = session.get(Room, redemption.room_id)
        if room is None:
            raise NotFound()
        name, email = _share_viewer(
            redemption.share_id,
            redemption.recipient_email,
            redemption.recipient_name,
            requester,
        )

        if redemption.target_type == ShareTarget.FILE:
            file = session.get(File, redemption.file_id)
            if file is None:
                raise NotFound()
            viewer = ViewerContext(name, email, _now(), room.name, context.ip)
            result = await self.renderer.render(
                session,
                file,
                room,
                viewer,
                actor_id=requester.id if requester else None,
                context=context,
            )
            return self._shared_file_view(file, result, redemption.allow_download, redemption.allow_print).as_dict()

        folder = session.get(Folder, redemption.folder_id)
        if folder is None:
            raise NotFound()
        files = session.exec(
            select(File)
            .where(col(File.folder_id).in_(folder_subtree_ids(session, folder.id)))  # type: ignore[arg-type]
            .order_by(col(File.name))
        ).all()
        grant = issue_folder_grant(
            {
                "s": redemption.share_id,
                "a": requester.id if requester else None,
                "n": name,
                "e": email,
            }
        )
        return FolderView(
            folder={"id": folder.id, "name": folder.name, "room_id": folder.room_id},
            files=[file_metadata(f) for f in files],
            grant=grant,
            can_download=redemption.allow_download,
            can_print=redemption.allow_print,
        ).as_dict()

    async def view_shared_folder_file(
        self,
        session: Session,
        grant: str,
        file_id: int,
        context: Optional[RequestContext] = None,
    ) -> Dict[str, Any]:
        """Open one file inside a redeemed folder link while its grant is valid."""
        context = context or RequestContext()
        with audit.guard(
            session,
            "SHARED_FOLDER_FILE_VIEW",
            resource_type="file",
            resource_id=file_id,
            context=context,
        ) as scope:
            payload = load_folder_grant(grant)
            scope.actor_id = payload.get("a")
            scope.details["share_id"] = payload["s"]
            link = session.get(ShareLink, payload["s"])
            now = _now()
            if link is None or not link.is_active:
                raise LinkInvalid("revoked")
            if link.expires_at is not None and link.expires_at <= now:
                raise LinkInvalid("expired")
            scope.room_id = link.room_id

            file = session.get(File, file_id)
            if file is None or file.room_id != link.room_id:
                raise LinkInvalid("file_outside_share")
            if link.folder_id not in {f.id for f in folder_chain(session, file.folder_id)}:
                raise LinkInvalid("file_outside_share")
            room = session.get(Room, link.room_id)
            if room is None or not sharing.room_available(room, now):
                raise LinkInvalid("room_unavailable")

            viewer = ViewerContext(payload["n"], payload["e"], now, room.name, context.ip)
            result = await self.renderer.render(
                session, file, room, viewer, actor_id=payload.get("a"), context=context
            )
            scope.details["watermarked"] = result.watermarked
            view = self._shared_file_view(file, result, link.allow_download, link.allow_print)
        return view.as_dict()

    def _shared_file_view(
        self, file: File, result: RenderResult, allow_download: bool, allow_print: bool
    ) -> FileView:
        return FileView(
            pointer_url=result.pointer.url,
            expires_at=result.pointer.expires_at,
            file=file_metadata(file),
            can_download=allow_download,
            can_print=allow_print,
            watermarked=result.watermarked,
        )

    def resolve_pointer(self, token: str) -> Tuple[str, str, str]:
        """Storage key, media type and filename behind an unexpired content pointer."""
        payload = load_pointer(token)
        return payload["k"], payload.get("m") or "application/octet-stream", payload.get("n") or "document"

    async def open_pointer(self, token: str) -> Tuple[bytes, str, str]:
        key, media_type, filename = self.resolve_pointer(token)
        if not await self.storage.exists(key):
            raise LinkInvalid("artifact_missing")
        return await self.storage.read(key), media_type, filename
