import pytest
from unittest.mock import patch

from groupcal_jobs.db.models import PushDeliveryFailure, PushDeliveryStatus
from groupcal_jobs.services.expo_push_service import ExpoPushService
from groupcal_jobs.services.push_delivery_failure_service import (
    PushDeliveryFailureService,
)
from groupcal_jobs.tasks.cron.push_delivery_retrier import (
    INVALID_PUSH_TOKEN,
    _async_push_delivery_retrier,
)
from groupcal_jobs.utils.datetime_utils import naive_utc_now
from tests.conftest import FakePushService, push_token

pytestmark = pytest.mark.integration

RETRIER = "groupcal_jobs.tasks.cron.push_delivery_retrier"


async def _retry(session_provider, push_service):
    with patch(f"{RETRIER}.get_sync_session", side_effect=session_provider):
        return await _async_push_delivery_retrier("push_delivery_retrier_cron", push_service=push_service)


def _reload(db_session, failure_id) -> PushDeliveryFailure:
    db_session.expire_all()
    return db_session.get(PushDeliveryFailure, failure_id)


class TestRetry:
    """Test re-sending failed push messages."""

    @pytest.mark.asyncio
    async def test_successful_retry_resolves(
        self, db_session, session_provider, make_delivery_failure
    ):
        failure = make_delivery_failure(token=push_token("bob"))
        push_service = FakePushService()

        result = await _retry(session_provider, push_service)

        assert result["success"] == True
        assert result["resolved_count"] == 1
        message = push_service.sent_messages[0]
        assert message.to == push_token("bob")
        assert message.body == "In 1 hour: Team sync"
        assert message.data["type"] == "event_reminder"

        failure = _reload(db_session, failure.id)
        assert failure.status == PushDeliveryStatus.RESOLVED
        assert failure.attempts == 2
        assert failure.resolved_at is not None

    @pytest.mark.asyncio
    async def test_transient_failure_stays_pending(
        self, db_session, session_provider, make_delivery_failure
    ):
        failure = make_delivery_failure(token=push_token("bob"))
        push_service = FakePushService(ticket_errors={push_token("bob"): "MessageRateExceeded"})

        result = await _retry(session_provider, push_service)

        assert result["pending_count"] == 1
        failure = _reload(db_session, failure.id)
        assert failure.status == PushDeliveryStatus.PENDING
        assert failure.attempts == 2
        assert failure.error_code == "MessageRateExceeded"

    @pytest.mark.asyncio
    async def test_last_attempt_exhausts(
        self, db_session, session_provider, make_delivery_failure
    ):
        failure = make_delivery_failure(token=push_token("bob"), attempts=2)
        push_service = FakePushService(ticket_errors={push_token("bob"): "MessageRateExceeded"})

        result = await _retry(session_provider, push_service)

        assert result["exhausted_count"] == 1
        failure = _reload(db_session, failure.id)
        assert failure.status == PushDeliveryStatus.EXHAUSTED
        assert failure.attempts == 3

    @pytest.mark.asyncio
    async def test_unregistered_device_exhausts_immediately(
        self, db_session, session_provider, make_delivery_failure
    ):
        failure = make_delivery_failure(token=push_token("bob"))
        push_service = FakePushService(ticket_errors={push_token("bob"): "DeviceNotRegistered"})

        await _retry(session_provider, push_service)

        assert _reload(db_session, failure.id).status == PushDeliveryStatus.EXHAUSTED

    @pytest.mark.asyncio
    async def test_invalid_token_exhausts(
        self, db_session, session_provider, make_delivery_failure
    ):
        failure = make_delivery_failure(token="not-a-token")

        result = await _retry(session_provider, ExpoPushService())

        assert result["exhausted_count"] == 1
        failure = _reload(db_session, failure.id)
        assert failure.status == PushDeliveryStatus.EXHAUSTED
        assert failure.error_code == INVALID_PUSH_TOKEN

    @pytest.mark.asyncio
    async def test_finished_failures_are_not_retried(
        self, db_session, session_provider, make_delivery_failure
    ):
        make_delivery_failure(status=PushDeliveryStatus.RESOLVED)
        make_delivery_failure(status=PushDeliveryStatus.EXHAUSTED)
        make_delivery_failure(attempts=3)
        push_service = FakePushService()

        result = await _retry(session_provider, push_service)

        assert result["processed_count"] == 0
        assert push_service.calls == []


class TestClaimAttempt:
    """Test the conditional attempt counter."""

    def test_stale_attempt_count_loses(self, db_session, make_delivery_failure):
        failure = make_delivery_failure()
        store = PushDeliveryFailureService(db_session)
        now = naive_utc_now()

        assert store.claim_attempt(failure.id, 1, now) == True
        assert store.claim_attempt(failure.id, 1, now) == False
        assert _reload(db_session, failure.id).attempts == 2
