import asyncio
from typing import Any, Dict

from groupcal_jobs.celery import celery
from groupcal_jobs.db.session import get_sync_session
from groupcal_jobs.schemas.event_schemas import CalendarEventPayload
from groupcal_jobs.services.event_reminder_service import EventReminderService
from groupcal_jobs.utils.context import request_id_scope
from groupcal_jobs.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def event_deleted_notification_task(self, request_id: str, event_id: str):
    """
    Cancel the pending group reminder of a deleted event.

    Only rows still in `scheduled` are moved to `cancelled`; a reminder that
    was already sent or failed keeps its terminal status.

    Args:
        request_id: The request ID for tracking purposes
        event_id: Id of the deleted event
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_event_deleted_notification(request_id, event_id))


async def _async_event_deleted_notification(request_id: str, event_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            cancelled = EventReminderService(db_session).cancel_for_event(event_id)
            return {
                "success": True,
                "cancelled_count": cancelled,
                "event_id": event_id,
                "request_id": request_id,
            }
        except Exception as e:
            logger.error(
                "Event reminder cancellation task exception",
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


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def event_updated_notification_task(
    self, request_id: str, event_id: str, event: Dict[str, Any]
):
    """
    Reschedule the group reminder of an edited event.

    The pending reminder is cancelled and a new one is scheduled from the
    updated start time, subject to the same rules as event creation.

    Args:
        request_id: The request ID for tracking purposes
        event_id: Id of the edited event
        event: The updated event record
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_event_updated_notification(request_id, event_id, event))


async def _async_event_updated_notification(
    request_id: str, event_id: str, event: Dict[str, Any]
):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            payload = CalendarEventPayload.model_validate({**event, "id": event_id})
            notification = EventReminderService(db_session).reschedule_for_event(payload)
            return {
                "success": True,
                "scheduled": notification is not None,
                "notification_id": notification.id if notification else None,
                "event_id": event_id,
                "request_id": request_id,
            }
        except Exception as e:
            logger.error(
                "Event reminder reschedule task exception",
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
