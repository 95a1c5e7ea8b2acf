from datetime import datetime
from typing import List, Optional, Sequence

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from groupcal_jobs.db.models import (
    TERMINAL_STATUSES,
    PushDeliveryFailure,
    PushDeliveryStatus,
    ScheduledNotification,
    ScheduledNotificationSource,
    ScheduledNotificationStatus,
)
from groupcal_jobs.schemas.push_schemas import PushDeliveryError
from groupcal_jobs.utils.errors import DatabaseError
from .push_delivery_failure_service import NON_RETRYABLE_ERRORS

DUPLICATE_SCHEDULED_NOTIFICATION = "DUPLICATE_SCHEDULED_NOTIFICATION"


class ScheduledNotificationService:
    """
    Store for scheduled reminder rows.

    Every status transition is a conditional UPDATE guarded on the current
    status, so concurrent or redelivered invocations cannot both win.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def get_scheduled_for_event(self, event_id: str) -> Optional[ScheduledNotification]:
        """Return the pending reminder for an event, if any."""
        result = self.db.execute(
            select(ScheduledNotification)
            .where(
                and_(
                    ScheduledNotification.event_id == event_id,
                    ScheduledNotification.status
                    == ScheduledNotificationStatus.SCHEDULED,
                )
            )
            .limit(1)
        )
        return result.scalar_one_or_none()

    def create(
        self,
        perform_at: datetime,
        event_id: str,
        event_title: str,
        group_id: str,
        creator_id: Optional[str],
        event_start_date: Optional[str] = None,
        source: ScheduledNotificationSource = ScheduledNotificationSource.SERVER,
        created_at: Optional[datetime] = None,
    ) -> ScheduledNotification:
        """
        Insert a new scheduled reminder.

        Raises:
            DatabaseError: With error_code DUPLICATE_SCHEDULED_NOTIFICATION when
                another scheduled row for the same event already exists
        """
        notification = ScheduledNotification(
            perform_at=perform_at,
            status=ScheduledNotificationStatus.SCHEDULED,
            source=source,
            event_id=event_id,
            event_title=event_title,
            event_start_date=event_start_date,
            group_id=group_id,
            creator_id=creator_id,
        )
        if created_at is not None:
            notification.created_at = created_at

        self.db.add(notification)
        try:
            self.db.commit()
        except IntegrityError as e:
            self.db.rollback()
            raise DatabaseError(
                f"Event {event_id} already has a scheduled notification: {e.orig}",
                error_code=DUPLICATE_SCHEDULED_NOTIFICATION,
            )
        return notification

    def get_due_notifications(
        self, now: datetime, limit: int
    ) -> List[ScheduledNotification]:
        """Scheduled rows whose perform_at is at or before ``now``, capped at ``limit``."""
        result = self.db.execute(
            select(ScheduledNotification)
            .where(
                and_(
                    ScheduledNotification.status
                    == ScheduledNotificationStatus.SCHEDULED,
                    ScheduledNotification.perform_at <= now,
                )
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    def claim(self, notification_id: str, claimed_by: str, now: datetime) -> bool:
        """
        Atomically move a due row from scheduled to sent.

        Returns:
            True if this caller won the claim, False if the row was already
            claimed, cancelled or is not due yet
        """
        result = self.db.execute(
            update(ScheduledNotification)
            .where(
                and_(
                    ScheduledNotification.id == notification_id,
                    ScheduledNotification.status
                    == ScheduledNotificationStatus.SCHEDULED,
                    ScheduledNotification.perform_at <= now,
                )
            )
            .values(
                status=ScheduledNotificationStatus.SENT,
                claimed_by=claimed_by,
                sent_at=now,
                sent_count=0,
            )
        )
        self.db.commit()
        return result.rowcount == 1

    def mark_sent(self, notification_id: str, claimed_by: str, sent_count: int) -> bool:
        """Record the number of attempted messages on a row this caller claimed."""
        result = self.db.execute(
            update(ScheduledNotification)
            .where(
                and_(
                    ScheduledNotification.id == notification_id,
                    ScheduledNotification.status == ScheduledNotificationStatus.SENT,
                    ScheduledNotification.claimed_by == claimed_by,
                )
            )
            .values(sent_count=sent_count)
        )
        self.db.commit()
        return result.rowcount == 1

    def mark_error(
        self,
        notification_id: str,
        error_message: str,
        now: datetime,
        claimed_by: Optional[str] = None,
    ) -> bool:
        """
        Move a row to error.

        Allowed from scheduled, or from sent when the row was claimed by
        ``claimed_by`` (the failing invocation).
        """
        allowed = ScheduledNotification.status == ScheduledNotificationStatus.SCHEDULED
        if claimed_by is not None:
            allowed = or_(
                allowed,
                and_(
                    ScheduledNotification.status == ScheduledNotificationStatus.SENT,
                    ScheduledNotification.claimed_by == claimed_by,
                ),
            )

        result = self.db.execute(
            update(ScheduledNotification)
            .where(and_(ScheduledNotification.id == notification_id, allowed))
            .values(
                status=ScheduledNotificationStatus.ERROR,
                error_message=error_message,
                error_at=now,
                sent_at=None,
                sent_count=None,
            )
        )
        self.db.commit()
        return result.rowcount == 1

    def cancel_for_event(self, event_id: str, now: datetime) -> int:
        """Cancel every scheduled reminder of an event. Returns the number cancelled."""
        result = self.db.execute(
            update(ScheduledNotification)
            .where(
                and_(
                    ScheduledNotification.event_id == event_id,
                    ScheduledNotification.status
                    == ScheduledNotificationStatus.SCHEDULED,
                )
            )
            .values(status=ScheduledNotificationStatus.CANCELLED, cancelled_at=now)
        )
        self.db.commit()
        return result.rowcount

    def record_delivery_failures(
        self,
        notification_id: str,
        failures: Sequence[PushDeliveryError],
        now: datetime,
    ) -> int:
        """Store per-message delivery failures for later retry."""
        if not failures:
            return 0

        self.db.add_all(
            PushDeliveryFailure(
                scheduled_notification_id=notification_id,
                push_token=failure.message.to,
                title=failure.message.title,
                body=failure.message.body,
                data=failure.message.data,
                error_code=failure.error_code,
                error_message=failure.error_message,
                attempts=1,
                status=(
                    PushDeliveryStatus.EXHAUSTED
                    if failure.error_code in NON_RETRYABLE_ERRORS
                    else PushDeliveryStatus.PENDING
                ),
                last_attempt_at=now,
            )
            for failure in failures
        )
        self.db.commit()
        return len(failures)

    def get_expired_terminal_ids(self, cutoff: datetime, limit: int) -> List[str]:
        """Ids of terminal rows with perform_at strictly before ``cutoff``."""
        result = self.db.execute(
            select(ScheduledNotification.id)
            .where(
                and_(
                    ScheduledNotification.status.in_(TERMINAL_STATUSES),
                    ScheduledNotification.perform_at < cutoff,
                )
            )
            .limit(limit)
        )
        return list(result.scalars().all())

    def delete_notifications(self, notification_ids: Sequence[str]) -> int:
        """Delete rows and their delivery failures in one transaction."""
        if not notification_ids:
            return 0

        try:
            self.db.execute(
                delete(PushDeliveryFailure).where(
                    PushDeliveryFailure.scheduled_notification_id.in_(notification_ids)
                )
            )
            result = self.db.execute(
                delete(ScheduledNotification).where(
                    ScheduledNotification.id.in_(notification_ids)
                )
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        return result.rowcount
