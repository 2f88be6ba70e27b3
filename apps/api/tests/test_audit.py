import json
from datetime import timedelta

import pytest

from dataroom import audit
from dataroom.audit import AuditFilters, RequestContext
from dataroom.exceptions import LinkInvalid, NotFound
from dataroom.models import AuditEvent, utcnow


def test_guard_records_success(session, factory):
    room = factory.room(factory.user())
    ctx = RequestContext(ip="192.0.2.10", user_agent="pytest-agent")
    with audit.guard(session, "TEST_ACTION", resource_type="room", resource_id=room.id, room_id=room.id, context=ctx) as scope:
        scope.details["k"] = "v"

    events = audit.query(session, AuditFilters(room_id=room.id, action="TEST_ACTION"))
    assert len(events) == 1
    assert events[0]["ip"] == "192.0.2.10"
    assert events[0]["details"] == {"k": "v"}


def test_guard_records_denial_and_reraises(session, factory):
    room = factory.room(factory.user())
    with pytest.raises(LinkInvalid):
        with audit.guard(session, "TEST_ACTION", resource_type="room", room_id=room.id):
            raise LinkInvalid("expired")

    events = audit.query(session, AuditFilters(room_id=room.id))
    assert [e["action"] for e in events] == ["TEST_ACTION_DENIED"]
    assert events[0]["details"] == {"denial": "LinkInvalid", "reason": "expired"}


def test_guard_discards_staged_changes_on_denial(session, factory):
    room = factory.room(factory.user())
    original = room.name
    with pytest.raises(LinkInvalid):
        with audit.guard(session, "RENAME", resource_type="room", room_id=room.id):
            room.name = "Renamed"
            session.add(room)
            raise LinkInvalid("nope")
    session.refresh(room)
    assert room.name == original


def test_non_security_errors_are_not_audited(session, factory):
    room = factory.room(factory.user())
    with pytest.raises(NotFound):
        with audit.guard(session, "LOOKUP", resource_type="room", room_id=room.id):
            raise NotFound()
    assert audit.query(session, AuditFilters(room_id=room.id)) == []


def test_private_keys_never_leave_query(session, factory):
    room = factory.room(factory.user())
    audit.record(
        session,
        "NOTE_CREATE",
        resource_type="note",
        room_id=room.id,
        details={"note_content": "price is too high", "message": "hi", "file_id": 9},
    )
    events = audit.query(session, AuditFilters(room_id=room.id))
    assert events[0]["details"] == {"file_id": 9}
    # Still stored for the record itself
    stored = session.get(AuditEvent, events[0]["id"])
    assert "price is too high" in stored.details_json


def test_query_filters_by_time_and_actor(session, factory):
    user = factory.user()
    room = factory.room(user)
    file = factory.file(room)
    audit.record(session, "FILE_VIEW", resource_type="file", resource_id=file.id, room_id=room.id, actor_id=user.id)
    audit.record(session, "FILE_VIEW", resource_type="file", resource_id=file.id, room_id=room.id)

    assert len(audit.query(session, AuditFilters(room_id=room.id, actor_id=user.id))) == 1
    future = utcnow() + timedelta(hours=1)
    assert audit.query(session, AuditFilters(room_id=room.id, since=future)) == []
    assert len(audit.query(session, AuditFilters(room_id=room.id, limit=1))) == 1


def test_aggregate_counts(session, factory):
    alice, bob = factory.user(), factory.user()
    room = factory.room(alice)
    deck, memo = factory.file(room, name="deck.pdf"), factory.file(room, name="memo.pdf")
    for _ in range(3):
        audit.record(session, "FILE_VIEW", resource_type="file", resource_id=deck.id, room_id=room.id, actor_id=alice.id)
    audit.record(session, "FILE_VIEW", resource_type="file", resource_id=memo.id, room_id=room.id, actor_id=bob.id)
    audit.record(
        session, "SHARE_LINK_CONSUME_DENIED", resource_type="share_link", room_id=room.id,
        details={"reason": "expired", "message": "private"},
    )

    summary = audit.aggregate(session, AuditFilters(room_id=room.id))
    assert summary["total"] == 5
    assert summary["by_action"] == {"FILE_VIEW": 4, "SHARE_LINK_CONSUME_DENIED": 1}
    assert sum(summary["by_day"].values()) == 5
    assert summary["top_users"][0] == {"user_id": alice.id, "count": 3}
    assert summary["top_files"][0] == {"file_id": str(deck.id), "count": 3}
    assert "private" not in json.dumps(summary)


def test_best_effort_record_swallows_failures(session, monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(audit, "append", boom)
    audit.record_best_effort(session, "AUDIT_EXPORT", resource_type="room")
