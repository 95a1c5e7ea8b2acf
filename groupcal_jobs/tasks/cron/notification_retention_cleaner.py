import asyncio
from datetime import timedelta

from groupcal_jobs.celery import celery
from groupcal_jobs.config.settings import settings
from groupcal_jobs.db.session import get_sync_session
from groupcal_jobs.services.scheduled_notification_service import (
    ScheduledNotificationService,
)
from groupcal_jobs.utils.context import request_id_scope
from groupcal_jobs.utils.datetime_utils import naive_utc_now
from groupcal_jobs.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=30)
def notification_retention_cleaner_task(self, request_id: str):
    """
    Daily task to delete finished reminder rows.

    Runs at 00:00 daily. Rows in a terminal status (sent, error, cancelled)
    whose perform_at is older than RETENTION_DAYS are deleted together with
    their delivery failures, at most RETENTION_BATCH_SIZE per run. Scheduled
    rows are never touched.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_notification_retention_cleaner(request_id))


async def _async_notification_retention_cleaner(request_id: str):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            cutoff = naive_utc_now() - timedelta(days=settings.RETENTION_DAYS)
            store = ScheduledNotificationService(db_session)

            expired_ids = store.get_expired_terminal_ids(
                cutoff, settings.RETENTION_BATCH_SIZE
            )
            if not expired_ids:
                logger.info("No expired notifications to delete")
                return {
                    "success": True,
                    "deleted_count": 0,
                    "cutoff": cutoff.isoformat(),
                    "request_id": request_id,
                }

            deleted = store.delete_notifications(expired_ids)

            logger.info(
                "Notification retention cleanup completed",
                deleted_count=deleted,
                cutoff=cutoff.isoformat(),
            )

            return {
                "success": True,
                "deleted_count": deleted,
                "cutoff": cutoff.isoformat(),
                "request_id": request_id,
            }
        except Exception as e:
            logger.error(
                "Notification retention cleaner task exception",
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }
