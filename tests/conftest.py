import pytest
import uuid
from datetime import datetime, timedelta
from typing import Generator, List, Optional, Set

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from groupcal_jobs.db.models import (
    Base,
    CalendarEvent,
    GroupMember,
    Post,
    PushDeliveryFailure,
    PushDeliveryStatus,
    ScheduledNotification,
    ScheduledNotificationSource,
    ScheduledNotificationStatus,
    User,
)
from groupcal_jobs.schemas.push_schemas import (
    PushDeliveryError,
    PushMessage,
    PushSendResult,
)
from groupcal_jobs.utils.datetime_utils import naive_utc_now
from groupcal_jobs.utils.errors import StorageError, StorageObjectNotFoundError


# Test database setup
TEST_DATABASE_URL = "sqlite:///:memory:"


@pytest.fixture
def test_engine():
    """Create a fresh in-memory database for each test."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for each test."""
    session_maker = sessionmaker(bind=test_engine, class_=Session, expire_on_commit=False)
    session = session_maker()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def session_provider(db_session: Session):
    """Stand-in for get_sync_session that yields the test session."""

    def _provider():
        yield db_session

    return _provider


def push_token(name: str) -> str:
    return f"ExponentPushToken[{name}]"


# Test doubles
class FakePushService:
    """Records sent messages; tokens listed in ``ticket_errors`` fail with that code."""

    def __init__(self, ticket_errors: Optional[dict] = None, raise_for: Optional[Set[str]] = None):
        self.ticket_errors = ticket_errors or {}
        self.raise_for = raise_for or set()
        self.calls: List[List[PushMessage]] = []

    @property
    def sent_messages(self) -> List[PushMessage]:
        return [message for call in self.calls for message in call]

    async def send_messages(self, messages: List[PushMessage]) -> PushSendResult:
        self.calls.append(list(messages))
        for message in messages:
            if message.to in self.raise_for:
                raise RuntimeError(f"Transport exploded for {message.to}")

        result = PushSendResult(attempted=len(messages))
        for message in messages:
            if message.to in self.ticket_errors:
                result.failures.append(
                    PushDeliveryError(
                        message=message,
                        error_code=self.ticket_errors[message.to],
                        error_message=f"{self.ticket_errors[message.to]} for {message.to}",
                    )
                )
            else:
                result.accepted += 1
        return result


class FakeStorageService:
    """In-memory object store with configurable missing and failing paths."""

    def __init__(self, existing: Optional[Set[str]] = None, failing: Optional[Set[str]] = None):
        self.existing = set(existing or ())
        self.failing = set(failing or ())
        self.delete_calls: List[str] = []

    async def delete_object(self, object_name: str) -> None:
        self.delete_calls.append(object_name)
        if object_name in self.failing:
            raise StorageError(f"Failed to delete '{object_name}'", error_code="STORAGE_DELETE_FAILED")
        if object_name not in self.existing:
            raise StorageObjectNotFoundError(object_name)
        self.existing.remove(object_name)


@pytest.fixture
def fake_push_service() -> FakePushService:
    return FakePushService()


# Test data factories
@pytest.fixture
def make_user(db_session: Session):
    def _make_user(user_id: str, token: Optional[str] = None) -> User:
        user = User(id=user_id, display_name=user_id.title(), push_token=token)
        db_session.add(user)
        db_session.commit()
        return user

    return _make_user


@pytest.fixture
def make_member(db_session: Session):
    def _make_member(group_id: str, user_id: str) -> GroupMember:
        member = GroupMember(group_id=group_id, user_id=user_id)
        db_session.add(member)
        db_session.commit()
        return member

    return _make_member


@pytest.fixture
def make_event(db_session: Session):
    def _make_event(
        start_date: str,
        group_id: Optional[str] = "group-1",
        time: Optional[str] = None,
        title: str = "Team sync",
        user_id: str = "alice",
        event_id: Optional[str] = None,
    ) -> CalendarEvent:
        event = CalendarEvent(
            id=event_id or f"event-{uuid.uuid4().hex[:8]}",
            title=title,
            start_date=start_date,
            time=time,
            group_id=group_id,
            user_id=user_id,
        )
        db_session.add(event)
        db_session.commit()
        return event

    return _make_event


@pytest.fixture
def make_notification(db_session: Session):
    def _make_notification(
        perform_at: Optional[datetime] = None,
        status: ScheduledNotificationStatus = ScheduledNotificationStatus.SCHEDULED,
        event_id: Optional[str] = None,
        group_id: str = "group-1",
        creator_id: Optional[str] = "alice",
        title: str = "Team sync",
        source: ScheduledNotificationSource = ScheduledNotificationSource.SERVER,
    ) -> ScheduledNotification:
        notification = ScheduledNotification(
            perform_at=perform_at or naive_utc_now() - timedelta(minutes=1),
            status=status,
            source=source,
            event_id=event_id or f"event-{uuid.uuid4().hex[:8]}",
            event_title=title,
            event_start_date="2025-03-10",
            group_id=group_id,
            creator_id=creator_id,
        )
        db_session.add(notification)
        db_session.commit()
        return notification

    return _make_notification


@pytest.fixture
def make_delivery_failure(db_session: Session, make_notification):
    def _make_delivery_failure(
        token: str = push_token("bob"),
        attempts: int = 1,
        status: PushDeliveryStatus = PushDeliveryStatus.PENDING,
        error_code: Optional[str] = "TransportError",
        notification: Optional[ScheduledNotification] = None,
    ) -> PushDeliveryFailure:
        notification = notification or make_notification(
            status=ScheduledNotificationStatus.SENT
        )
        failure = PushDeliveryFailure(
            scheduled_notification_id=notification.id,
            push_token=token,
            title="Event reminder",
            body="In 1 hour: Team sync",
            data={"type": "event_reminder", "eventId": notification.event_id},
            error_code=error_code,
            error_message="first attempt failed",
            attempts=attempts,
            status=status,
            last_attempt_at=naive_utc_now(),
        )
        db_session.add(failure)
        db_session.commit()
        return failure

    return _make_delivery_failure


@pytest.fixture
def make_post(db_session: Session):
    def _make_post(
        age_days: float,
        attachments: Optional[list] = None,
        post_id: Optional[str] = None,
        cleaned_at: Optional[datetime] = None,
    ) -> Post:
        post = Post(
            id=post_id or f"post-{uuid.uuid4().hex[:8]}",
            group_id="group-1",
            author_id="alice",
            attachments=attachments,
            created_at=naive_utc_now() - timedelta(days=age_days),
            attachments_cleaned_at=cleaned_at,
        )
        db_session.add(post)
        db_session.commit()
        return post

    return _make_post
