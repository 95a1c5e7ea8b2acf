from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from groupcal_jobs.config.settings import settings
from groupcal_jobs.db.models import (
    CalendarEvent,
    ScheduledNotification,
    ScheduledNotificationSource,
)
from groupcal_jobs.schemas.event_schemas import PERSONAL_GROUP_ID, CalendarEventPayload
from groupcal_jobs.utils.datetime_utils import (
    compute_event_start,
    compute_notify_at,
    event_date_part,
    to_naive_utc,
    to_utc,
    utc_now,
)
from groupcal_jobs.utils.errors import DatabaseError
from groupcal_jobs.utils.logging import get_logger
from .recipient_service import RecipientService
from .scheduled_notification_service import (
    DUPLICATE_SCHEDULED_NOTIFICATION,
    ScheduledNotificationService,
)

logger = get_logger()

UNTITLED_EVENT = "Untitled"


class EventReminderService:
    """
    Turns calendar events into scheduled reminder rows.

    Scheduling is idempotent: an event that already has a scheduled reminder
    is skipped, so trigger redelivery and client-created rows never produce
    a second pending reminder.
    """

    def __init__(
        self,
        db_session: Session,
        tz: Optional[timezone] = None,
        lead: Optional[timedelta] = None,
        default_time: Optional[str] = None,
    ):
        self.db = db_session
        self.store = ScheduledNotificationService(db_session)
        self.tz = tz or settings.event_timezone
        self.lead = lead or timedelta(minutes=settings.REMINDER_LEAD_MINUTES)
        self.default_time = default_time or settings.DEFAULT_EVENT_TIME

    def compute_perform_at(self, event: CalendarEventPayload) -> Optional[datetime]:
        """
        Aware reminder time for an event.

        Returns None if the start cannot be parsed, or if the reminder time
        falls outside the datetime range once shifted to UTC.
        """
        start = compute_event_start(
            event.start_date, event.time, self.tz, default_time=self.default_time
        )
        if start is None:
            return None
        try:
            perform_at = compute_notify_at(start, self.lead)
            to_naive_utc(perform_at)
        except OverflowError:
            return None
        return perform_at

    def schedule_for_event(
        self,
        event: CalendarEventPayload,
        now: Optional[datetime] = None,
        source: ScheduledNotificationSource = ScheduledNotificationSource.SERVER,
    ) -> Optional[ScheduledNotification]:
        """
        Create the reminder row for an event when one is needed.

        Returns:
            The new row, or None when the event was skipped (personal event,
            unparseable start, reminder time not in the future, or already
            scheduled)
        """
        now = to_utc(now) if now else utc_now()

        if not event.is_group_event:
            logger.debug("Personal event, no group reminder", event_id=event.id)
            return None

        perform_at = self.compute_perform_at(event)
        if perform_at is None:
            logger.debug(
                "Unparseable event start, no reminder",
                event_id=event.id,
                start_date=event.start_date,
                time=event.time,
            )
            return None

        if perform_at <= now:
            logger.debug(
                "Reminder time already passed",
                event_id=event.id,
                perform_at=perform_at.isoformat(),
            )
            return None

        if self.store.get_scheduled_for_event(event.id) is not None:
            logger.info("Reminder already scheduled", event_id=event.id)
            return None

        try:
            notification = self.store.create(
                perform_at=to_naive_utc(perform_at),
                event_id=event.id,
                event_title=event.title or UNTITLED_EVENT,
                event_start_date=event_date_part(event.start_date),
                group_id=event.group_id,
                creator_id=event.user_id,
                source=source,
                created_at=to_naive_utc(now),
            )
        except DatabaseError as e:
            if e.error_code != DUPLICATE_SCHEDULED_NOTIFICATION:
                raise
            logger.info("Reminder scheduled concurrently", event_id=event.id)
            return None

        logger.info(
            "Reminder scheduled",
            event_id=event.id,
            notification_id=notification.id,
            perform_at=perform_at.isoformat(),
            source=source.value,
        )
        return notification

    def cancel_for_event(self, event_id: str, now: Optional[datetime] = None) -> int:
        """Cancel the pending reminder(s) of an event."""
        cancelled = self.store.cancel_for_event(event_id, to_naive_utc(now or utc_now()))
        if cancelled:
            logger.info("Reminder cancelled", event_id=event_id, cancelled=cancelled)
        return cancelled

    def reschedule_for_event(
        self, event: CalendarEventPayload, now: Optional[datetime] = None
    ) -> Optional[ScheduledNotification]:
        """Cancel the current reminder of an edited event and schedule a fresh one."""
        now = to_utc(now) if now else utc_now()
        self.cancel_for_event(event.id, now)
        return self.schedule_for_event(event, now)

    def sync_group_events_for_user(
        self, user_id: str, now: Optional[datetime] = None, window_days: Optional[int] = None
    ) -> int:
        """
        Backfill reminders for upcoming events in every group of a user.

        Only events starting between now + lead and now + window_days are
        considered. Returns the number of reminders created.
        """
        now = to_utc(now) if now else utc_now()
        window_days = window_days or settings.SYNC_WINDOW_DAYS

        group_ids = [
            group_id
            for group_id in RecipientService(self.db).get_user_group_ids(user_id)
            if group_id != PERSONAL_GROUP_ID
        ]
        if not group_ids:
            return 0

        local_now = now.astimezone(self.tz)
        first_day = (local_now + self.lead).date().isoformat()
        after_last_day = (local_now + timedelta(days=window_days + 1)).date().isoformat()

        result = self.db.execute(
            select(CalendarEvent)
            .where(
                and_(
                    CalendarEvent.group_id.in_(group_ids),
                    CalendarEvent.start_date >= first_day,
                    CalendarEvent.start_date < after_last_day,
                )
            )
            .order_by(CalendarEvent.start_date)
        )

        added = 0
        failed = 0
        for event in result.scalars().all():
            payload = CalendarEventPayload.from_model(event)
            try:
                if self.schedule_for_event(payload, now, ScheduledNotificationSource.SYNC):
                    added += 1
            except Exception as e:
                self.db.rollback()
                failed += 1
                logger.error(
                    "Failed to sync event reminder",
                    user_id=user_id,
                    event_id=payload.id,
                    error=str(e),
                    exc_info=True,
                )

        logger.info(
            "Group reminder sync completed",
            user_id=user_id,
            group_count=len(group_ids),
            added=added,
            failed=failed,
        )
        return added
