import httpx
import pytest

from conftest import FailingNotifier, RecordingNotifier, events_for
from dataroom.access_requests import AccessRequestWorkflow, Decision
from dataroom.exceptions import (
    DuplicateRequest,
    InvalidState,
    NotificationFailure,
    PermissionDenied,
)
from dataroom.models import AccessRequest, RequestStatus, Role
from dataroom.notifications import WebhookNotifier, dispatch
from dataroom.permissions import get_access, resolve


@pytest.fixture
def room_with_owner(factory):
    owner = factory.user("Olivia Owner")
    return owner, factory.room(owner)


async def test_create_notifies_managers(session, factory, room_with_owner, context):
    owner, room = room_with_owner
    admin, viewer, requester = factory.user(), factory.user(), factory.user("Rita")
    factory.member(room, admin, Role.ADMIN)
    factory.member(room, viewer, Role.VIEWER)
    notifier = RecordingNotifier()

    request = await AccessRequestWorkflow(notifier).create(
        session, requester, room, reason="Due diligence", context=context
    )

    assert request.status == RequestStatus.PENDING
    recipients, template, data = notifier.sent[0]
    assert template == "access_request_created"
    assert sorted(recipients) == sorted([owner.email, admin.email])
    assert data["requester_email"] == requester.email
    assert events_for(session, "ACCESS_REQUEST_CREATE", request.id)


async def test_duplicate_pending_request(session, factory, room_with_owner):
    _, room = room_with_owner
    requester = factory.user()
    workflow = AccessRequestWorkflow(RecordingNotifier())
    await workflow.create(session, requester, room)
    with pytest.raises(DuplicateRequest):
        await workflow.create(session, requester, room)


async def test_existing_member_cannot_request(session, factory, room_with_owner):
    _, room = room_with_owner
    viewer = factory.user()
    factory.member(room, viewer, Role.VIEWER)
    with pytest.raises(DuplicateRequest):
        await AccessRequestWorkflow(RecordingNotifier()).create(session, viewer, room)


async def test_approval_grants_role_defaults(session, factory, room_with_owner):
    owner, room = room_with_owner
    requester = factory.user()
    notifier = RecordingNotifier()
    workflow = AccessRequestWorkflow(notifier)
    request = await workflow.create(session, requester, room)

    reviewed = await workflow.review(
        session, owner, request.id, Decision.APPROVE, role=Role.AUDITOR, message="Welcome"
    )

    assert reviewed.status == RequestStatus.APPROVED
    assert reviewed.reviewed_by == owner.id and reviewed.granted_role == Role.AUDITOR
    caps = resolve(session, requester.id, room)
    assert caps.can_view and caps.can_view_audit and not caps.can_download
    assert notifier.sent[-1][0] == [requester.email]
    assert notifier.sent[-1][2]["approved"] is True
    assert events_for(session, "ACCESS_REQUEST_APPROVE", request.id)


async def test_approval_reenables_disabled_access(session, factory, room_with_owner):
    owner, room = room_with_owner
    requester = factory.user()
    factory.member(room, requester, Role.CONTRIBUTOR, can_view=False)
    workflow = AccessRequestWorkflow(RecordingNotifier())
    request = await workflow.create(session, requester, room)

    await workflow.review(session, owner, request.id, Decision.APPROVE)
    access = get_access(session, requester.id, room.id)
    session.refresh(access)
    assert access.can_view and access.role == Role.VIEWER


async def test_non_manager_review_is_denied_and_audited(session, factory, room_with_owner):
    _, room = room_with_owner
    viewer, requester = factory.user(), factory.user()
    factory.member(room, viewer, Role.VIEWER)
    workflow = AccessRequestWorkflow(RecordingNotifier())
    request = await workflow.create(session, requester, room)

    with pytest.raises(PermissionDenied):
        await workflow.review(session, viewer, request.id, Decision.APPROVE)

    session.refresh(request)
    assert request.status == RequestStatus.PENDING
    assert get_access(session, requester.id, room.id) is None
    denied = events_for(session, "ACCESS_REQUEST_APPROVE_DENIED", request.id)
    assert denied and denied[-1].actor_id == viewer.id


async def test_review_twice_is_invalid(session, factory, room_with_owner):
    owner, room = room_with_owner
    requester = factory.user()
    workflow = AccessRequestWorkflow(RecordingNotifier())
    request = await workflow.create(session, requester, room)
    await workflow.review(session, owner, request.id, Decision.DENY)

    with pytest.raises(InvalidState):
        await workflow.review(session, owner, request.id, Decision.APPROVE)
    assert session.get(AccessRequest, request.id).status == RequestStatus.DENIED


async def test_owner_role_cannot_be_granted(session, factory, room_with_owner):
    owner, room = room_with_owner
    requester = factory.user()
    workflow = AccessRequestWorkflow(RecordingNotifier())
    request = await workflow.create(session, requester, room)
    with pytest.raises(PermissionDenied):
        await workflow.review(session, owner, request.id, Decision.APPROVE, role=Role.ROOM_OWNER)


async def test_notification_failure_keeps_decision(session, factory, room_with_owner):
    owner, room = room_with_owner
    requester = factory.user()
    workflow = AccessRequestWorkflow(FailingNotifier())
    request = await workflow.create(session, requester, room)

    reviewed = await workflow.review(session, owner, request.id, Decision.APPROVE)
    assert reviewed.status == RequestStatus.APPROVED
    assert resolve(session, requester.id, room).can_view


async def test_list_pending_managers_only(session, factory, room_with_owner):
    owner, room = room_with_owner
    viewer, requester = factory.user(), factory.user()
    factory.member(room, viewer, Role.VIEWER)
    workflow = AccessRequestWorkflow(RecordingNotifier())
    request = await workflow.create(session, requester, room)

    assert [r.id for r in workflow.list_pending(session, owner, room)] == [request.id]
    with pytest.raises(PermissionDenied):
        workflow.list_pending(session, viewer, room)


async def test_webhook_notifier_reports_rejection():
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    async with httpx.AsyncClient(transport=transport) as client:
        notifier = WebhookNotifier("https://notify.example.com/hook", client=client)
        with pytest.raises(NotificationFailure):
            await notifier.notify(["a@example.com"], "access_request_created", {})
        assert await dispatch(notifier, ["a@example.com"], "access_request_created", {}) is False


async def test_webhook_notifier_posts_payload():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = WebhookNotifier("https://notify.example.com/hook", client=client)
        assert await dispatch(notifier, ["a@example.com"], "access_request_reviewed", {"approved": True})
    assert seen[0].method == "POST"
    assert b"access_request_reviewed" in seen[0].content
