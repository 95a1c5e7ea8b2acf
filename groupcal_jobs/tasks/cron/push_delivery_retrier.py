import asyncio
from typing import Optional

from sqlalchemy.orm import Session

from groupcal_jobs.celery import celery
from groupcal_jobs.config.settings import settings
from groupcal_jobs.db.models import PushDeliveryFailure, PushDeliveryStatus
from groupcal_jobs.db.session import get_sync_session
from groupcal_jobs.schemas.push_schemas import PushMessage
from groupcal_jobs.services.expo_push_service import (
    ExpoPushService,
    get_expo_push_service,
)
from groupcal_jobs.services.push_delivery_failure_service import (
    PushDeliveryFailureService,
)
from groupcal_jobs.utils.context import request_id_scope
from groupcal_jobs.utils.datetime_utils import naive_utc_now
from groupcal_jobs.utils.logging import get_logger

INVALID_PUSH_TOKEN = "InvalidPushToken"


@celery.task(bind=True)
def push_delivery_retrier_task(self, request_id: str):
    """
    Re-send push messages whose earlier delivery failed.

    Runs every 5 minutes. Pending failures with attempts below
    PUSH_RETRY_MAX_ATTEMPTS are claimed one by one (attempt counter bumped
    conditionally) and re-sent. A failure is resolved on success and marked
    exhausted once its budget is spent or the error cannot be fixed by
    retrying (e.g. DeviceNotRegistered).

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_push_delivery_retrier(request_id))


async def _async_push_delivery_retrier(
    request_id: str, push_service: Optional[ExpoPushService] = None
):
    logger = get_logger().bind(request_id=request_id)
    max_attempts = settings.PUSH_RETRY_MAX_ATTEMPTS

    for db_session in get_sync_session():
        try:
            failures = PushDeliveryFailureService(db_session).get_retryable(
                max_attempts, settings.PUSH_RETRY_BATCH_SIZE
            )
            if not failures:
                logger.debug("No push deliveries to retry")
                return {
                    "success": True,
                    "processed_count": 0,
                    "request_id": request_id,
                }

            push_service = push_service or get_expo_push_service()
            outcomes = {
                PushDeliveryStatus.RESOLVED: 0,
                PushDeliveryStatus.PENDING: 0,
                PushDeliveryStatus.EXHAUSTED: 0,
            }
            skipped = 0
            errors = 0

            for failure in failures:
                try:
                    status = await _retry_delivery(
                        db_session, failure, push_service, max_attempts
                    )
                except Exception as e:
                    db_session.rollback()
                    errors += 1
                    logger.error(
                        "Push delivery retry failed",
                        error=str(e),
                        exc_info=True,
                    )
                    continue

                if status is None:
                    skipped += 1
                else:
                    outcomes[status] += 1

            logger.info(
                "Push delivery retry completed",
                processed_count=len(failures),
                resolved_count=outcomes[PushDeliveryStatus.RESOLVED],
                pending_count=outcomes[PushDeliveryStatus.PENDING],
                exhausted_count=outcomes[PushDeliveryStatus.EXHAUSTED],
                skipped_count=skipped,
                error_count=errors,
            )

            return {
                "success": True,
                "processed_count": len(failures),
                "resolved_count": outcomes[PushDeliveryStatus.RESOLVED],
                "pending_count": outcomes[PushDeliveryStatus.PENDING],
                "exhausted_count": outcomes[PushDeliveryStatus.EXHAUSTED],
                "skipped_count": skipped,
                "error_count": errors,
                "request_id": request_id,
            }
        except Exception as e:
            logger.error(
                "Push delivery retrier task exception",
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }


async def _retry_delivery(
    db_session: Session,
    failure: PushDeliveryFailure,
    push_service: ExpoPushService,
    max_attempts: int,
) -> Optional[PushDeliveryStatus]:
    """
    Retry one failed message.

    Returns:
        The new status of the failure, or None if another invocation
        claimed this attempt first
    """
    store = PushDeliveryFailureService(db_session)
    failure_id = failure.id
    expected_attempts = failure.attempts
    message = PushMessage(
        to=failure.push_token,
        title=failure.title,
        body=failure.body,
        data=failure.data or {},
    )

    if not store.claim_attempt(failure_id, expected_attempts, naive_utc_now()):
        return None
    attempts = expected_attempts + 1

    result = await push_service.send_messages([message])

    if result.attempted == 0:
        return store.mark_failed(
            failure_id,
            attempts=max_attempts,
            max_attempts=max_attempts,
            error_code=INVALID_PUSH_TOKEN,
            error_message="Push token is not a valid Expo push token",
        )

    if result.failures:
        error = result.failures[0]
        return store.mark_failed(
            failure_id,
            attempts=attempts,
            max_attempts=max_attempts,
            error_code=error.error_code,
            error_message=error.error_message,
        )

    store.mark_resolved(failure_id, naive_utc_now())
    return PushDeliveryStatus.RESOLVED
