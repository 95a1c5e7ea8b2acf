import enum
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from groupcal_jobs.utils.datetime_utils import naive_utc_now


class Base(DeclarativeBase):
    pass


# Enums
class ScheduledNotificationStatus(enum.Enum):
    SCHEDULED = "scheduled"
    SENT = "sent"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = (
    ScheduledNotificationStatus.SENT,
    ScheduledNotificationStatus.ERROR,
    ScheduledNotificationStatus.CANCELLED,
)


class ScheduledNotificationSource(enum.Enum):
    SERVER = "server"
    CLIENT = "client"
    SYNC = "sync"


class PushDeliveryStatus(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"


def _new_id() -> str:
    return str(uuid.uuid4())


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=naive_utc_now, onupdate=naive_utc_now
    )


# Models owned by the notification pipeline
class ScheduledNotification(Base, AuditMixin):
    __tablename__ = "scheduled_notifications"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=_new_id
    )
    perform_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[ScheduledNotificationStatus] = mapped_column(
        Enum(ScheduledNotificationStatus),
        default=ScheduledNotificationStatus.SCHEDULED,
        nullable=False,
    )
    source: Mapped[ScheduledNotificationSource] = mapped_column(
        Enum(ScheduledNotificationSource),
        default=ScheduledNotificationSource.SERVER,
        nullable=False,
    )

    # Snapshot of the event so dispatch never re-reads it
    event_id: Mapped[str] = mapped_column(String(128), nullable=False)
    event_title: Mapped[str] = mapped_column(String(500), nullable=False)
    event_start_date: Mapped[Optional[str]] = mapped_column(String(10))
    group_id: Mapped[str] = mapped_column(String(128), nullable=False)
    creator_id: Mapped[Optional[str]] = mapped_column(String(128))

    # Set by the dispatch invocation that won the claim
    claimed_by: Mapped[Optional[str]] = mapped_column(String(128))
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    sent_count: Mapped[Optional[int]] = mapped_column(Integer)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    error_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    delivery_failures: Mapped[List["PushDeliveryFailure"]] = relationship(
        back_populates="scheduled_notification",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "sent_count IS NULL OR sent_count >= 0",
            name="ck_sched_notif_sent_count_non_negative",
        ),
        # At most one scheduled reminder per event
        Index(
            "uq_sched_notif_event_scheduled",
            "event_id",
            unique=True,
            sqlite_where=text("status = 'SCHEDULED'"),
            postgresql_where=text("status = 'SCHEDULED'"),
        ),
        Index("idx_sched_notif_status_perform_at", "status", "perform_at"),
        Index("idx_sched_notif_event_status", "event_id", "status"),
        Index("idx_sched_notif_group_id", "group_id"),
    )


class PushDeliveryFailure(Base, AuditMixin):
    __tablename__ = "push_delivery_failures"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=_new_id
    )
    scheduled_notification_id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False),
        ForeignKey("scheduled_notifications.id", ondelete="CASCADE"),
        nullable=False,
    )
    push_token: Mapped[str] = mapped_column(String(255), nullable=False)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON)
    error_code: Mapped[Optional[str]] = mapped_column(String(100))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    attempts: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    status: Mapped[PushDeliveryStatus] = mapped_column(
        Enum(PushDeliveryStatus), default=PushDeliveryStatus.PENDING, nullable=False
    )
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Relationships
    scheduled_notification: Mapped["ScheduledNotification"] = relationship(
        back_populates="delivery_failures"
    )

    # Constraints
    __table_args__ = (
        CheckConstraint("attempts >= 1", name="ck_push_fail_attempts_positive"),
        Index("idx_push_fail_status_attempts", "status", "attempts"),
        Index("idx_push_fail_sched_notif_id", "scheduled_notification_id"),
    )


# Models owned by the rest of the application (read-only here)
class User(Base, AuditMixin):
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    display_name: Mapped[Optional[str]] = mapped_column(String(200))
    push_token: Mapped[Optional[str]] = mapped_column(String(255))


class GroupMember(Base, AuditMixin):
    __tablename__ = "group_members"

    id: Mapped[str] = mapped_column(
        Uuid(as_uuid=False), primary_key=True, default=_new_id
    )
    group_id: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    # Constraints
    __table_args__ = (
        UniqueConstraint("group_id", "user_id", name="uq_group_member_group_user"),
        Index("idx_group_member_user_id", "user_id"),
    )


class CalendarEvent(Base, AuditMixin):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    title: Mapped[Optional[str]] = mapped_column(String(500))
    description: Mapped[Optional[str]] = mapped_column(Text)
    # "YYYY-MM-DD" or a full ISO date-time
    start_date: Mapped[str] = mapped_column(String(40), nullable=False)
    time: Mapped[Optional[str]] = mapped_column(String(8))
    group_id: Mapped[Optional[str]] = mapped_column(String(128))
    user_id: Mapped[Optional[str]] = mapped_column(String(128))

    # Constraints
    __table_args__ = (Index("idx_event_group_start", "group_id", "start_date"),)


class Post(Base, AuditMixin):
    __tablename__ = "posts"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    group_id: Mapped[Optional[str]] = mapped_column(String(128))
    author_id: Mapped[Optional[str]] = mapped_column(String(128))
    # [{"storagePath": ..., "name": ..., "size": ...}, ...]
    attachments: Mapped[Optional[List[Dict[str, Any]]]] = mapped_column(JSON)
    attachments_cleaned_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    # Constraints
    __table_args__ = (Index("idx_post_created_at", "created_at"),)
