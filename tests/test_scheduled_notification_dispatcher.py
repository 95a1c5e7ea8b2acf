import pytest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from groupcal_jobs.db.models import (
    PushDeliveryFailure,
    PushDeliveryStatus,
    ScheduledNotificationStatus,
)
from groupcal_jobs.services.scheduled_notification_service import (
    ScheduledNotificationService,
)
from groupcal_jobs.tasks.cron.scheduled_notification_dispatcher import (
    _async_scheduled_notification_dispatcher,
)
from groupcal_jobs.utils.datetime_utils import naive_utc_now
from tests.conftest import FakePushService, push_token

pytestmark = pytest.mark.integration

DISPATCHER = "groupcal_jobs.tasks.cron.scheduled_notification_dispatcher"


@pytest.fixture
def group_with_members(make_user, make_member):
    """group-1: alice (creator), bob and carol with tokens, dave without, erin with a bad token."""
    make_user("alice", push_token("alice"))
    make_user("bob", push_token("bob"))
    make_user("carol", push_token("carol"))
    make_user("dave", None)
    make_user("erin", "not-a-token")
    for user_id in ("alice", "bob", "carol", "dave", "erin"):
        make_member("group-1", user_id)


async def _dispatch(session_provider, push_service):
    with patch(f"{DISPATCHER}.get_sync_session", side_effect=session_provider):
        return await _async_scheduled_notification_dispatcher(
            "scheduled_notification_dispatcher_cron", push_service=push_service
        )


class TestDispatch:
    """Test sending due reminders."""

    @pytest.mark.asyncio
    async def test_sends_to_members_except_creator(
        self, db_session, session_provider, group_with_members, make_notification
    ):
        notification = make_notification(title="Team sync")
        push_service = FakePushService()

        result = await _dispatch(session_provider, push_service)

        assert result["success"] == True
        assert result["processed_count"] == 1
        assert result["sent_count"] == 1

        recipients = sorted(message.to for message in push_service.sent_messages)
        assert recipients == [push_token("bob"), push_token("carol")]

        message = push_service.sent_messages[0]
        assert message.title == "Event reminder ⏰"
        assert message.body == "In 1 hour: Team sync"
        assert message.data == {
            "type": "event_reminder",
            "eventId": notification.event_id,
            "eventStartDate": "2025-03-10",
            "groupId": "group-1",
        }

        db_session.refresh(notification)
        assert notification.status == ScheduledNotificationStatus.SENT
        assert notification.sent_count == 2
        assert notification.sent_at is not None
        assert notification.claimed_by.startswith("scheduled_notification_dispatcher_cron:")

    @pytest.mark.asyncio
    async def test_not_due_rows_are_untouched(
        self, db_session, session_provider, group_with_members, make_notification
    ):
        future = make_notification(perform_at=naive_utc_now() + timedelta(minutes=5))
        cancelled = make_notification(status=ScheduledNotificationStatus.CANCELLED)
        push_service = FakePushService()

        result = await _dispatch(session_provider, push_service)

        assert result["processed_count"] == 0
        assert push_service.calls == []
        db_session.refresh(future)
        db_session.refresh(cancelled)
        assert future.status == ScheduledNotificationStatus.SCHEDULED
        assert cancelled.status == ScheduledNotificationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_no_recipients_still_sent(
        self, db_session, session_provider, make_user, make_member, make_notification
    ):
        make_user("alice", push_token("alice"))
        make_member("group-1", "alice")
        notification = make_notification(creator_id="alice")
        push_service = FakePushService()

        result = await _dispatch(session_provider, push_service)

        assert result["sent_count"] == 1
        assert push_service.calls == []
        db_session.refresh(notification)
        assert notification.status == ScheduledNotificationStatus.SENT
        assert notification.sent_count == 0

    @pytest.mark.asyncio
    async def test_batch_is_capped(self, db_session, session_provider, make_notification):
        for _ in range(150):
            make_notification()

        result = await _dispatch(session_provider, FakePushService())

        assert result["processed_count"] == 100
        remaining = ScheduledNotificationService(db_session).get_due_notifications(
            naive_utc_now(), 500
        )
        assert len(remaining) == 50

    @pytest.mark.asyncio
    async def test_failure_is_isolated(
        self, db_session, session_provider, make_user, make_member, make_notification
    ):
        make_user("bob", push_token("bob"))
        make_user("zoe", push_token("zoe"))
        make_member("group-1", "bob")
        make_member("group-2", "zoe")
        ok = make_notification(group_id="group-1")
        broken = make_notification(group_id="group-2")
        push_service = FakePushService(raise_for={push_token("zoe")})

        result = await _dispatch(session_provider, push_service)

        assert result["success"] == True
        assert result["sent_count"] == 1
        assert result["error_count"] == 1

        db_session.refresh(ok)
        db_session.refresh(broken)
        assert ok.status == ScheduledNotificationStatus.SENT
        assert broken.status == ScheduledNotificationStatus.ERROR
        assert "Transport exploded" in broken.error_message
        assert broken.error_at is not None
        assert broken.sent_at is None
        assert broken.sent_count is None

    @pytest.mark.asyncio
    async def test_claimed_row_is_not_sent_twice(
        self, db_session, session_provider, group_with_members, make_notification
    ):
        """A row listed twice (as by an overlapping invocation) is delivered once."""
        notification = make_notification()
        push_service = FakePushService()

        with patch.object(
            ScheduledNotificationService,
            "get_due_notifications",
            return_value=[notification, notification],
        ):
            result = await _dispatch(session_provider, push_service)

        assert result["sent_count"] == 1
        assert result["skipped_count"] == 1
        assert len(push_service.calls) == 1

    @pytest.mark.asyncio
    async def test_ticket_failures_are_recorded(
        self, db_session, session_provider, group_with_members, make_notification
    ):
        notification = make_notification()
        push_service = FakePushService(
            ticket_errors={
                push_token("bob"): "MessageRateExceeded",
                push_token("carol"): "DeviceNotRegistered",
            }
        )

        result = await _dispatch(session_provider, push_service)

        assert result["sent_count"] == 1
        db_session.refresh(notification)
        assert notification.status == ScheduledNotificationStatus.SENT
        assert notification.sent_count == 2

        failures = {
            failure.push_token: failure
            for failure in db_session.execute(select(PushDeliveryFailure)).scalars()
        }
        assert failures[push_token("bob")].status == PushDeliveryStatus.PENDING
        assert failures[push_token("bob")].attempts == 1
        assert failures[push_token("carol")].status == PushDeliveryStatus.EXHAUSTED
        assert failures[push_token("carol")].scheduled_notification_id == notification.id


class TestClaim:
    """Test the conditional scheduled -> sent transition."""

    def test_only_one_claim_wins(self, db_session, make_notification):
        notification = make_notification()
        store = ScheduledNotificationService(db_session)
        now = naive_utc_now()

        assert store.claim(notification.id, "worker-a", now) == True
        assert store.claim(notification.id, "worker-b", now) == False

        db_session.refresh(notification)
        assert notification.claimed_by == "worker-a"

    def test_not_due_row_cannot_be_claimed(self, db_session, make_notification):
        notification = make_notification(perform_at=naive_utc_now() + timedelta(hours=1))
        store = ScheduledNotificationService(db_session)

        assert store.claim(notification.id, "worker-a", naive_utc_now()) == False

    def test_error_only_from_own_claim(self, db_session, make_notification):
        notification = make_notification()
        store = ScheduledNotificationService(db_session)
        now = naive_utc_now()
        store.claim(notification.id, "worker-a", now)

        assert store.mark_error(notification.id, "boom", now, claimed_by="worker-b") == False
        assert store.mark_error(notification.id, "boom", now) == False
        assert store.mark_error(notification.id, "boom", now, claimed_by="worker-a") == True

        db_session.refresh(notification)
        assert notification.status == ScheduledNotificationStatus.ERROR
