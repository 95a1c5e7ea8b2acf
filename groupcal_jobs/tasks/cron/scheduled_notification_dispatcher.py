import asyncio
import uuid
from typing import List, Optional

from sqlalchemy.orm import Session

from groupcal_jobs.celery import celery
from groupcal_jobs.config.settings import settings
from groupcal_jobs.db.models import ScheduledNotification
from groupcal_jobs.db.session import get_sync_session
from groupcal_jobs.schemas.push_schemas import PushMessage, PushSendResult
from groupcal_jobs.services.expo_push_service import (
    ExpoPushService,
    get_expo_push_service,
)
from groupcal_jobs.services.recipient_service import PushRecipient, RecipientService
from groupcal_jobs.services.scheduled_notification_service import (
    ScheduledNotificationService,
)
from groupcal_jobs.utils.context import request_id_scope
from groupcal_jobs.utils.datetime_utils import naive_utc_now
from groupcal_jobs.utils.logging import get_logger

OUTCOME_SENT = "sent"
OUTCOME_ERROR = "error"
OUTCOME_SKIPPED = "skipped"


@celery.task(bind=True)
def scheduled_notification_dispatcher_task(self, request_id: str):
    """
    Send group reminders that have become due.

    Runs every minute. Picks up to DISPATCH_BATCH_SIZE scheduled rows whose
    perform_at has passed and, for each one independently:
    1. Resolves the group members to notify (creator excluded, valid tokens only)
    2. Claims the row with a conditional scheduled -> sent update
    3. Hands the messages to the Expo push service
    4. Records the attempted count, or moves the row to error on failure

    A row claimed by a concurrent or redelivered invocation is skipped, so a
    reminder is never sent twice.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_scheduled_notification_dispatcher(request_id))


async def _async_scheduled_notification_dispatcher(
    request_id: str, push_service: Optional[ExpoPushService] = None
):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            now = naive_utc_now()
            due_notifications = ScheduledNotificationService(
                db_session
            ).get_due_notifications(now, settings.DISPATCH_BATCH_SIZE)

            if not due_notifications:
                logger.debug("No due notifications")
                return {
                    "success": True,
                    "processed_count": 0,
                    "request_id": request_id,
                }

            logger.info(
                "Dispatching due notifications", due_count=len(due_notifications)
            )

            push_service = push_service or get_expo_push_service()
            # Unique per invocation; beat reuses the same request_id every minute
            invocation_id = f"{request_id}:{uuid.uuid4().hex}"
            outcomes = {OUTCOME_SENT: 0, OUTCOME_ERROR: 0, OUTCOME_SKIPPED: 0}

            for notification in due_notifications:
                outcome = await _dispatch_notification(
                    db_session, notification, push_service, request_id, invocation_id
                )
                outcomes[outcome] += 1

            logger.info(
                "Scheduled notification dispatch completed",
                processed_count=len(due_notifications),
                sent_count=outcomes[OUTCOME_SENT],
                error_count=outcomes[OUTCOME_ERROR],
                skipped_count=outcomes[OUTCOME_SKIPPED],
            )

            return {
                "success": True,
                "processed_count": len(due_notifications),
                "sent_count": outcomes[OUTCOME_SENT],
                "error_count": outcomes[OUTCOME_ERROR],
                "skipped_count": outcomes[OUTCOME_SKIPPED],
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                "Scheduled notification dispatcher task exception",
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }


async def _dispatch_notification(
    db_session: Session,
    notification: ScheduledNotification,
    push_service: ExpoPushService,
    request_id: str,
    invocation_id: str,
) -> str:
    """
    Process one due notification. Never raises.

    Returns:
        One of "sent", "error" or "skipped" (lost the claim)
    """
    logger = get_logger().bind(request_id=request_id, notification_id=notification.id)
    store = ScheduledNotificationService(db_session)
    notification_id = notification.id
    event_id = notification.event_id
    claimed = False

    try:
        recipients = RecipientService(db_session).get_push_recipients(
            notification.group_id, exclude_user_id=notification.creator_id
        )
        messages = _build_reminder_messages(notification, recipients)

        now = naive_utc_now()
        claimed = store.claim(notification_id, claimed_by=invocation_id, now=now)
        if not claimed:
            logger.info("Notification already claimed by another invocation")
            return OUTCOME_SKIPPED

        if messages:
            result = await push_service.send_messages(messages)
        else:
            result = PushSendResult()

        if result.failures:
            store.record_delivery_failures(notification_id, result.failures, now)

        store.mark_sent(notification_id, claimed_by=invocation_id, sent_count=len(messages))

        logger.info(
            "Notification sent",
            event_id=event_id,
            attempted=len(messages),
            accepted=result.accepted,
            failed=result.failed,
        )
        return OUTCOME_SENT

    except Exception as e:
        db_session.rollback()
        logger.error(
            "Notification processing failed",
            event_id=event_id,
            error=str(e),
            exc_info=True,
        )
        try:
            store.mark_error(
                notification_id,
                error_message=str(e),
                now=naive_utc_now(),
                claimed_by=invocation_id if claimed else None,
            )
        except Exception as update_error:
            db_session.rollback()
            logger.error(
                "Failed to record notification error",
                error=str(update_error),
                exc_info=True,
            )
        return OUTCOME_ERROR


def _build_reminder_messages(
    notification: ScheduledNotification, recipients: List[PushRecipient]
) -> List[PushMessage]:
    return [
        PushMessage(
            to=recipient.push_token,
            title=settings.REMINDER_TITLE,
            body=settings.REMINDER_BODY_TEMPLATE.format(title=notification.event_title),
            data={
                "type": "event_reminder",
                "eventId": notification.event_id,
                "eventStartDate": notification.event_start_date or "",
                "groupId": notification.group_id,
            },
        )
        for recipient in recipients
    ]
