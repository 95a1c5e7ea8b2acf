import asyncio

from groupcal_jobs.celery import celery
from groupcal_jobs.db.session import get_sync_session
from groupcal_jobs.services.event_reminder_service import EventReminderService
from groupcal_jobs.utils.context import request_id_scope
from groupcal_jobs.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def sync_group_event_notifications_task(self, request_id: str, user_id: str):
    """
    Backfill group reminders for a user, typically enqueued on app start.

    Upcoming events (within SYNC_WINDOW_DAYS) in the user's groups that have
    no scheduled reminder get one, tagged with source `sync`.

    Args:
        request_id: The request ID for tracking purposes
        user_id: The user whose groups are synced
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_sync_group_event_notifications(request_id, user_id))


async def _async_sync_group_event_notifications(request_id: str, user_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            added = EventReminderService(db_session).sync_group_events_for_user(user_id)
            return {
                "success": True,
                "added_count": added,
                "user_id": user_id,
                "request_id": request_id,
            }
        except Exception as e:
            logger.error(
                "Group reminder sync task exception",
                user_id=user_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "user_id": user_id,
                "request_id": request_id,
            }
