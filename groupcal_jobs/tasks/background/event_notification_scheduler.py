import asyncio
from typing import Any, Dict

from pydantic import ValidationError

from groupcal_jobs.celery import celery
from groupcal_jobs.db.session import get_sync_session
from groupcal_jobs.schemas.event_schemas import CalendarEventPayload
from groupcal_jobs.services.event_reminder_service import EventReminderService
from groupcal_jobs.utils.context import request_id_scope
from groupcal_jobs.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def event_created_notification_task(
    self, request_id: str, event_id: str, event: Dict[str, Any]
):
    """
    Schedule the group reminder for a newly created calendar event.

    Invoked once per event creation with at-least-once delivery. The handler
    is idempotent: a redelivered event, or one whose reminder the client
    already created, produces no second scheduled row.

    Args:
        request_id: The request ID for tracking purposes
        event_id: Id of the created event
        event: The event record (camelCase keys as written by the client)
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_event_created_notification(request_id, event_id, event))


async def _async_event_created_notification(
    request_id: str, event_id: str, event: Dict[str, Any]
):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            try:
                payload = CalendarEventPayload.model_validate({**event, "id": event_id})
            except ValidationError as e:
                # Malformed event records are skipped, not failed
                logger.debug(
                    "Invalid event record, no reminder",
                    event_id=event_id,
                    error=str(e),
                )
                return {
                    "success": True,
                    "scheduled": False,
                    "event_id": event_id,
                    "request_id": request_id,
                }

            notification = EventReminderService(db_session).schedule_for_event(payload)

            return {
                "success": True,
                "scheduled": notification is not None,
                "notification_id": notification.id if notification else None,
                "event_id": event_id,
                "request_id": request_id,
            }

        except Exception as e:
            logger.error(
                "Event reminder scheduling task exception",
                event_id=event_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "event_id": event_id,
                "request_id": request_id,
            }
