from datetime import timedelta

import pytest
from sqlalchemy import DateTime
from sqlmodel import SQLModel

from conftest import FailingNotifier, RecordingNotifier, events_for
from dataroom import rooms
from dataroom.exceptions import PermissionDenied
from dataroom.models import Role, Room, utcnow
from dataroom.permissions import get_access


async def test_invited_member_is_notified(session, factory, context):
    owner = factory.user("Olivia Owner")
    room = factory.room(owner)
    notifier = RecordingNotifier()

    access = await rooms.invite_member(
        session, notifier, owner, room, "New.Member@Example.com", Role.VIEWER,
        message="Welcome aboard", context=context,
    )

    [(recipients, template, data)] = notifier.sent
    assert recipients == ["new.member@example.com"]
    assert template == "room_invitation"
    assert data["room_name"] == room.name and data["role"] == "VIEWER"
    assert data["inviter_name"] == "Olivia Owner"
    assert data["message"] == "Welcome aboard"
    assert data["room_url"].endswith(f"/rooms/{room.id}")
    assert access.can_view


async def test_failed_invitation_keeps_membership(session, factory):
    owner = factory.user()
    room = factory.room(owner)

    access = await rooms.invite_member(
        session, FailingNotifier(), owner, room, "later@example.com", Role.CONTRIBUTOR
    )

    session.expire_all()
    stored = get_access(session, access.user_id, room.id)
    assert stored is not None and stored.role == Role.CONTRIBUTOR
    assert events_for(session, "MEMBER_ADD", room.id, room_id=room.id)


async def test_refused_invitation_sends_nothing(session, factory):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner)
    factory.member(room, viewer, Role.VIEWER)
    notifier = RecordingNotifier()

    with pytest.raises(PermissionDenied):
        await rooms.invite_member(session, notifier, viewer, room, "friend@example.com")

    assert notifier.sent == []
    assert events_for(session, "MEMBER_ADD_DENIED", room.id, room_id=room.id)


def test_timestamps_are_stored_as_naive_utc(session, factory):
    room = factory.room(factory.user(), expires_at=utcnow() + timedelta(days=1))

    session.expire_all()
    stored = session.get(Room, room.id)
    assert stored.created_at.tzinfo is None
    assert stored.expires_at > utcnow()

    # Decorated types keep the underlying column type in impl_instance
    types = {
        str(c): getattr(c.type, "impl_instance", c.type)
        for t in SQLModel.metadata.sorted_tables
        for c in t.columns
    }
    timestamps = {name: type_ for name, type_ in types.items() if isinstance(type_, DateTime)}
    assert "room.expires_at" in timestamps
    assert [name for name, type_ in timestamps.items() if type_.timezone] == []
