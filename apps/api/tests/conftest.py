import hashlib
import io
import os
import tempfile
from pathlib import Path
from typing import Optional
from uuid import uuid4

# Point the app at a throwaway database and storage dir before it is imported
_TMP = tempfile.mkdtemp(prefix="dataroom-tests-")
os.environ.setdefault("SQLITE_URL", f"sqlite:///{_TMP}/test.db")
os.environ.setdefault("STORAGE_DIR", os.path.join(_TMP, "storage"))
os.environ["HTTPS_ONLY_COOKIES"] = "false"
os.environ["ALLOW_EMAIL_PARAM"] = "true"

import fitz
import pytest
from fastapi.testclient import TestClient
from PIL import Image
from sqlmodel import Session, select

from dataroom.audit import RequestContext
from dataroom.db import engine, init_db
from dataroom.exceptions import NotificationFailure
from dataroom.main import app
from dataroom.models import AuditEvent, File, Folder, Role, Room, RoomAccess, User
from dataroom.permissions import apply_role
from dataroom.storage import LocalStorageBackend

init_db()


def make_pdf(text: str = "Quarterly numbers", pages: int = 1) -> bytes:
    doc = fitz.open()
    for i in range(pages):
        page = doc.new_page()
        page.insert_text((72, 72), f"{text} page {i + 1}")
    data = doc.tobytes()
    doc.close()
    return data


def make_png(size=(200, 120), color=(240, 240, 255)) -> bytes:
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def events_for(session: Session, action: str, resource_id=None, room_id=None) -> list:
    session.expire_all()
    stmt = select(AuditEvent).where(AuditEvent.action == action)
    if resource_id is not None:
        stmt = stmt.where(AuditEvent.resource_id == str(resource_id))
    if room_id is not None:
        stmt = stmt.where(AuditEvent.room_id == room_id)
    return list(session.exec(stmt).all())


class RecordingNotifier:
    def __init__(self):
        self.sent = []

    async def notify(self, recipients, template, data):
        self.sent.append((recipients, template, data))


class FailingNotifier:
    async def notify(self, recipients, template, data):
        raise NotificationFailure("smtp down")


class Factory:
    """Builds rows directly, bypassing the services under test."""

    def __init__(self, session: Session, storage: LocalStorageBackend):
        self.session = session
        self.storage = storage

    def user(self, name: str = "", **kwargs) -> User:
        user = User(email=f"user_{uuid4().hex}@example.com", name=name, **kwargs)
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def room(self, owner: Optional[User] = None, **policy) -> Room:
        room = Room(name=f"Deal {uuid4().hex[:6]}", **policy)
        self.session.add(room)
        self.session.commit()
        self.session.refresh(room)
        if owner is not None:
            self.member(room, owner, Role.ROOM_OWNER)
        return room

    def member(self, room: Room, user: User, role: Role = Role.VIEWER, **overrides) -> RoomAccess:
        access = apply_role(RoomAccess(user_id=user.id, room_id=room.id), role)
        for key, value in overrides.items():
            setattr(access, key, value)
        self.session.add(access)
        self.session.commit()
        self.session.refresh(access)
        return access

    def folder(self, room: Room, name: str = "Finance", parent: Optional[Folder] = None) -> Folder:
        folder = Folder(room_id=room.id, name=name, parent_id=parent.id if parent else None)
        self.session.add(folder)
        self.session.commit()
        self.session.refresh(folder)
        return folder

    def file(
        self,
        room: Room,
        folder: Optional[Folder] = None,
        name: str = "report.pdf",
        data: Optional[bytes] = None,
        mime_type: Optional[str] = "application/pdf",
    ) -> File:
        data = data if data is not None else make_pdf()
        key = f"rooms/{room.id}/{uuid4().hex}{os.path.splitext(name)[1]}"
        path = Path(self.storage.base_dir) / key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        file = File(
            room_id=room.id,
            folder_id=folder.id if folder else None,
            name=name,
            mime_type=mime_type,
            size_bytes=len(data),
            storage_key=key,
            sha256=hashlib.sha256(data).hexdigest(),
        )
        self.session.add(file)
        self.session.commit()
        self.session.refresh(file)
        return file


@pytest.fixture
def session():
    with Session(engine) as session:
        yield session


@pytest.fixture
def storage(monkeypatch):
    from dataroom.config import settings

    # The HTTP layer builds its backend from settings on every request
    backend = LocalStorageBackend(os.path.join(_TMP, "storage"))
    monkeypatch.setattr(settings, "storage_dir", str(backend.base_dir))
    return backend


@pytest.fixture
def factory(session, storage):
    return Factory(session, storage)


@pytest.fixture
def context():
    return RequestContext(ip="203.0.113.7", user_agent="pytest", country="US")


@pytest.fixture
def client():
    with TestClient(app) as client:
        yield client
