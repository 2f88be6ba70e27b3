from datetime import timedelta

import pytest

from dataroom.audit import RequestContext
from dataroom.exceptions import PermissionDenied, RoomExpired
from dataroom.models import FolderPermission, GroupMembership, Role, RoomStatus, UserGroup, utcnow
from dataroom.permissions import (
    CAPABILITY_FLAGS,
    ROLE_DEFAULTS,
    can_manage,
    require,
    resolve,
    role_defaults,
)


def test_no_capability_without_view(session, factory):
    owner, user = factory.user(), factory.user()
    room = factory.room(owner)
    factory.member(room, user, Role.ADMIN, can_view=False)

    caps = resolve(session, user.id, room)
    assert not any(caps.as_dict().values())
    assert caps.denial_reason == "view_disabled"


def test_outsider_gets_nothing(session, factory):
    room = factory.room(factory.user())
    caps = resolve(session, factory.user().id, room)
    assert caps.as_dict() == {flag: False for flag in CAPABILITY_FLAGS}
    with pytest.raises(PermissionDenied):
        require(caps, "can_view")


def test_role_defaults_are_copies():
    flags = role_defaults(Role.VIEWER)
    flags["can_manage_room"] = True
    assert ROLE_DEFAULTS[Role.VIEWER]["can_manage_room"] is False


def test_room_policy_gates_download_and_print(session, factory):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner, allow_download=False, allow_print=False)
    factory.member(room, viewer, Role.CONTRIBUTOR)

    caps = resolve(session, viewer.id, room)
    assert caps.can_view
    assert not caps.can_download
    assert not caps.can_print
    # upload is not policy gated
    assert caps.can_upload


def test_folder_rules_narrow_from_ancestors(session, factory):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner)
    factory.member(room, viewer, Role.VIEWER)
    parent = factory.folder(room, "Legal")
    child = factory.folder(room, "Contracts", parent=parent)
    session.add(FolderPermission(room_id=room.id, folder_id=parent.id, user_id=viewer.id, can_download=False))
    # A child rule cannot re-grant what an ancestor removed
    session.add(FolderPermission(room_id=room.id, folder_id=child.id, user_id=viewer.id, can_download=True))
    session.commit()

    caps = resolve(session, viewer.id, room, folder_id=child.id)
    assert caps.can_view
    assert not caps.can_download
    assert caps.can_print

    room_level = resolve(session, viewer.id, room)
    assert room_level.can_download


def test_group_rule_hides_folder(session, factory):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner)
    factory.member(room, viewer, Role.VIEWER)
    folder = factory.folder(room, "HR")
    group = UserGroup(room_id=room.id, name="External counsel")
    session.add(group)
    session.commit()
    session.add(GroupMembership(group_id=group.id, user_id=viewer.id))
    session.add(FolderPermission(room_id=room.id, folder_id=folder.id, group_id=group.id, can_view=False))
    session.commit()

    file = factory.file(room, folder)
    caps = resolve(session, viewer.id, room, file=file)
    assert caps.as_dict() == {flag: False for flag in CAPABILITY_FLAGS}
    assert caps.denial_reason == "view_denied_by_folder_rule"


def test_owner_ignores_folder_rules(session, factory):
    owner = factory.user()
    room = factory.room(owner)
    folder = factory.folder(room)
    session.add(FolderPermission(room_id=room.id, folder_id=folder.id, user_id=owner.id, can_view=False))
    session.commit()

    caps = resolve(session, owner.id, room, folder_id=folder.id)
    assert caps.can_view and caps.can_manage_room
    assert can_manage(session, owner.id, room)


def test_auditor_never_downloads_and_is_watermarked(session, factory):
    owner, auditor = factory.user(), factory.user()
    room = factory.room(owner, watermark_enabled=False)
    # Even if somebody ticks the boxes on the access row
    factory.member(room, auditor, Role.AUDITOR, can_download=True, can_print=True)

    caps = resolve(session, auditor.id, room)
    assert caps.can_view
    assert caps.can_view_audit
    assert not caps.can_download
    assert not caps.can_print
    assert caps.requires_watermark


def test_file_from_another_room_is_rejected(session, factory):
    owner = factory.user()
    room = factory.room(owner)
    other = factory.room(owner)
    file = factory.file(other)
    caps = resolve(session, owner.id, room, file=file)
    assert not caps.can_view
    assert caps.denial_reason == "file_outside_room"


@pytest.mark.parametrize(
    "overrides, ctx, reason",
    [
        ({"ip_whitelist": ["10.0.0.0/8"]}, RequestContext(ip="203.0.113.7"), "ip_not_whitelisted"),
        ({"allowed_countries": ["de", "FR"]}, RequestContext(ip="203.0.113.7", country="US"), "country_not_allowed"),
        ({"allowed_countries": ["US"]}, RequestContext(ip="203.0.113.7"), "country_not_allowed"),
    ],
)
def test_restriction_violation_denies_everything(session, factory, overrides, ctx, reason):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner)
    factory.member(room, viewer, Role.ADMIN, **overrides)

    caps = resolve(session, viewer.id, room, context=ctx)
    assert caps.as_dict() == {flag: False for flag in CAPABILITY_FLAGS}
    assert caps.denial_reason == reason


def test_restrictions_that_match_allow(session, factory):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner)
    factory.member(
        room, viewer, Role.VIEWER, ip_whitelist=["203.0.113.0/24"], allowed_countries=["us"]
    )
    caps = resolve(session, viewer.id, room, context=RequestContext(ip="203.0.113.7", country="US"))
    assert caps.can_view and caps.can_download


def test_expired_access_row(session, factory):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner)
    factory.member(room, viewer, Role.VIEWER, expires_at=utcnow() - timedelta(minutes=1))
    caps = resolve(session, viewer.id, room)
    assert not caps.can_view
    assert caps.denial_reason == "access_expired"


def test_nda_required_before_viewing(session, factory):
    owner, viewer = factory.user(), factory.user()
    room = factory.room(owner, require_nda=True)
    access = factory.member(room, viewer, Role.VIEWER)

    assert resolve(session, viewer.id, room).denial_reason == "nda_not_accepted"
    assert resolve(session, owner.id, room).can_view

    access.nda_accepted_at = utcnow()
    session.add(access)
    session.commit()
    assert resolve(session, viewer.id, room).can_view


@pytest.mark.parametrize("status", [RoomStatus.CLOSED, RoomStatus.ARCHIVED])
def test_inactive_room_raises_room_expired(session, factory, status):
    owner = factory.user()
    room = factory.room(owner, status=status)
    caps = resolve(session, owner.id, room)
    assert caps.room_expired and not caps.can_view
    with pytest.raises(RoomExpired) as exc:
        require(caps, "can_view")
    # Same public message as any other denial
    assert exc.value.message == PermissionDenied("x").message


def test_past_room_expiry(session, factory):
    owner = factory.user()
    room = factory.room(owner, expires_at=utcnow() - timedelta(seconds=1))
    with pytest.raises(RoomExpired):
        require(resolve(session, owner.id, room), "can_view")
