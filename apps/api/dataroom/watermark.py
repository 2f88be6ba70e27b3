"""
Viewer-specific watermarking.

Renditions are written under a keyed, per-viewer storage key and served
through a pointer whose lifetime is shorter than the room's regular content
pointers. A durable ``ScheduledDeletion`` row removes the artifact later;
the pointer expiry is what actually protects it.

Rendering never blocks a viewer: unsupported formats, failures and timeouts
all fall back to the original document and leave an audit event behind.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional
import asyncio
import io
import mimetypes
import os
import threading

import fitz  # PyMuPDF
from PIL import Image, ImageDraw, ImageFont
from sqlmodel import Session, col, select

from . import audit, db
from .audit import RequestContext
from .config import settings
from .exceptions import RenderingFailure
from .logging import get_logger
from .models import File, Room, ScheduledDeletion, utcnow
from .security import Pointer, artifact_digest, issue_pointer
from .storage import StorageBackend

logger = get_logger(__name__)

PDF_MIME_TYPES = {"application/pdf"}
IMAGE_FORMATS = {
    "image/png": "PNG",
    "image/jpeg": "JPEG",
    "image/webp": "WEBP",
    "image/gif": "GIF",
    "image/bmp": "BMP",
    "image/tiff": "TIFF",
}

STAMP_FONT_SIZE = 11
STAMP_OPACITY = 0.15
HEADER_FONT_SIZE = 7
HEADER_OPACITY = 0.6
GRID = 3
IMAGE_ALPHA = 72
IMAGE_ANGLE = 30

# MuPDF contexts are not safe to share between threads
_PDF_LOCK = threading.Lock()


@dataclass(frozen=True)
class ViewerContext:
    name: str
    email: str
    timestamp: datetime
    room_name: str
    ip: Optional[str] = None


@dataclass
class RenderResult:
    pointer: Pointer
    watermarked: bool
    status: str  # disabled | watermarked | skipped | degraded


def format_timestamp(value: datetime) -> str:
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def compose_stamp(viewer: ViewerContext) -> List[str]:
    lines = [
        "CONFIDENTIAL",
        f"Viewed by: {viewer.name} ({viewer.email})",
        f"Data Room: {viewer.room_name}",
        f"Date: {format_timestamp(viewer.timestamp)}",
    ]
    if viewer.ip:
        lines.append(f"IP: {viewer.ip}")
    return lines


def detect_kind(mime_type: Optional[str], name: str) -> Optional[str]:
    mime = mime_type or mimetypes.guess_type(name)[0]
    if mime in PDF_MIME_TYPES:
        return "pdf"
    if mime in IMAGE_FORMATS:
        return "image"
    return None


def watermark_pdf(data: bytes, lines: List[str]) -> bytes:
    """Tile the stamp over every page and add a header marker line."""
    # A render abandoned by its timeout may still hold the lock
    if not _PDF_LOCK.acquire(timeout=settings.render_timeout_seconds):
        raise RenderingFailure("renderer busy")
    try:
        doc = fitz.open(stream=data, filetype="pdf")
        try:
            if doc.needs_pass:
                raise RenderingFailure("encrypted document")
            text = "\n".join(lines)
            header = " | ".join(lines)
            for page in doc:
                rect = page.rect
                page.insert_text(
                    fitz.Point(rect.x0 + 12, rect.y0 + 12),
                    header,
                    fontsize=HEADER_FONT_SIZE,
                    color=(0.55, 0.1, 0.1),
                    fill_opacity=HEADER_OPACITY,
                    stroke_opacity=HEADER_OPACITY,
                )
                for row in range(GRID):
                    for column in range(GRID):
                        point = fitz.Point(
                            rect.x0 + rect.width * column / GRID + 20,
                            rect.y0 + rect.height * (row + 0.6) / GRID,
                        )
                        angle = 45 if (row + column) % 2 == 0 else -45
                        page.insert_text(
                            point,
                            text,
                            fontsize=STAMP_FONT_SIZE,
                            color=(0.5, 0.5, 0.5),
                            fill_opacity=STAMP_OPACITY,
                            stroke_opacity=STAMP_OPACITY,
                            morph=(point, fitz.Matrix(angle)),
                        )
            return doc.tobytes(garbage=3, deflate=True)
        finally:
            doc.close()
    finally:
        _PDF_LOCK.release()


def watermark_image(data: bytes, lines: List[str]) -> bytes:
    """Composite a tiled, rotated, semi-transparent stamp over a raster image."""
    with Image.open(io.BytesIO(data)) as source:
        image_format = source.format or "PNG"
        base = source.convert("RGBA")

    text = "\n".join(lines)
    font = ImageFont.load_default()
    left, top, right, bottom = ImageDraw.Draw(base).multiline_textbbox(
        (0, 0), text, font=font
    )
    tile = Image.new("RGBA", (right - left + 24, bottom - top + 24), (0, 0, 0, 0))
    ImageDraw.Draw(tile).multiline_text(
        (12 - left, 12 - top), text, font=font, fill=(128, 128, 128, IMAGE_ALPHA)
    )
    tile = tile.rotate(IMAGE_ANGLE, expand=True)

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    step_x, step_y = tile.width + 16, tile.height + 16
    for index, y in enumerate(range(-tile.height // 2, base.height, step_y)):
        shift = (step_x // 2) if index % 2 else 0
        for x in range(-tile.width // 2 - shift, base.width, step_x):
            overlay.paste(tile, (x, y), tile)
    stamped = Image.alpha_composite(base, overlay)

    if image_format in ("JPEG", "BMP", "GIF"):
        stamped = stamped.convert("RGB")
    out = io.BytesIO()
    stamped.save(out, format=image_format)
    return out.getvalue()


_RENDERERS: Dict[str, Callable[[bytes, List[str]], bytes]] = {
    "pdf": watermark_pdf,
    "image": watermark_image,
}


class WatermarkRenderer:
    def __init__(
        self,
        storage: StorageBackend,
        *,
        timeout: Optional[float] = None,
        pointer_ttl: Optional[int] = None,
        retention: Optional[int] = None,
    ) -> None:
        self.storage = storage
        self.timeout = timeout if timeout is not None else settings.render_timeout_seconds
        self.pointer_ttl = pointer_ttl or settings.watermark_pointer_ttl
        self.retention = retention or settings.watermark_artifact_retention

    def original_pointer(self, file: File, ttl: Optional[int] = None) -> Pointer:
        return issue_pointer(
            file.storage_key,
            ttl or settings.content_pointer_ttl,
            filename=file.name,
            media_type=file.mime_type,
        )

    def artifact_key(self, file: File, viewer: ViewerContext) -> str:
        digest = artifact_digest(
            file.sha256,
            viewer.email.lower(),
            viewer.timestamp.isoformat(),
            viewer.ip or "",
        )
        ext = os.path.splitext(file.name)[1].lower()
        return f"watermarks/{digest}{ext}"

    async def render(
        self,
        session: Session,
        file: File,
        room: Room,
        viewer: ViewerContext,
        *,
        actor_id: Optional[int] = None,
        force: bool = False,
        context: Optional[RequestContext] = None,
    ) -> RenderResult:
        if not (room.watermark_enabled or force):
            return RenderResult(self.original_pointer(file), False, "disabled")

        event = dict(
            resource_type="file",
            resource_id=file.id,
            room_id=room.id,
            actor_id=actor_id,
            context=context,
        )
        kind = detect_kind(file.mime_type, file.name)
        if kind is None:
            audit.record(
                session, "WATERMARK_SKIPPED", details={"mime_type": file.mime_type}, **event
            )
            return RenderResult(
                self.original_pointer(file, self.pointer_ttl), False, "skipped"
            )

        key = self.artifact_key(file, viewer)
        try:
            original = await self.storage.read(file.storage_key)
            rendered = await asyncio.wait_for(
                asyncio.to_thread(_RENDERERS[kind], original, compose_stamp(viewer)),
                timeout=self.timeout,
            )
            await self.storage.save_bytes(key, rendered)
        except Exception as exc:
            logger.exception("Watermarking file {} failed; serving original", file.id)
            audit.record(
                session,
                "WATERMARK_DEGRADED",
                details={"error": type(exc).__name__, "kind": kind},
                **event,
            )
            return RenderResult(
                self.original_pointer(file, self.pointer_ttl), False, "degraded"
            )

        session.add(
            ScheduledDeletion(
                storage_key=key,
                delete_after=utcnow() + timedelta(seconds=self.retention),
            )
        )
        session.commit()
        pointer = issue_pointer(
            key, self.pointer_ttl, filename=file.name, media_type=file.mime_type
        )
        return RenderResult(pointer, True, "watermarked")


async def purge_expired_artifacts(
    session: Session, storage: StorageBackend, now: Optional[datetime] = None
) -> int:
    """Delete artifacts whose retention has elapsed. Returns the number removed."""
    now = now or utcnow()
    due = session.exec(
        select(ScheduledDeletion).where(
            col(ScheduledDeletion.deleted_at).is_(None),
            ScheduledDeletion.delete_after <= now,
        )
    ).all()
    if not due:
        return 0
    # A key rendered again after an older record fell due is still in use
    still_needed = set(
        session.exec(
            select(ScheduledDeletion.storage_key).where(
                col(ScheduledDeletion.deleted_at).is_(None),
                ScheduledDeletion.delete_after > now,
            )
        ).all()
    )
    purged = 0
    for row in due:
        if row.storage_key not in still_needed:
            try:
                await storage.delete(row.storage_key)
            except OSError:
                logger.warning("Could not delete artifact {}; will retry", row.storage_key)
                continue
            purged += 1
        row.deleted_at = now
        session.add(row)
    session.commit()
    return purged


async def run_cleanup(storage: StorageBackend) -> None:
    """Background entry point with its own session. Never raises."""
    try:
        with Session(db.engine) as session:
            purged = await purge_expired_artifacts(session, storage)
        if purged:
            logger.info("Purged {} expired watermark artifact(s)", purged)
    except Exception:
        logger.exception("Watermark artifact cleanup failed")
