import asyncio
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from groupcal_jobs.celery import celery
from groupcal_jobs.config.settings import settings
from groupcal_jobs.db.models import Post
from groupcal_jobs.db.session import get_sync_session
from groupcal_jobs.services.storage_service import (
    MinIOStorageService,
    get_storage_service,
)
from groupcal_jobs.utils.context import request_id_scope
from groupcal_jobs.utils.datetime_utils import naive_utc_now
from groupcal_jobs.utils.errors import StorageObjectNotFoundError
from groupcal_jobs.utils.logging import get_logger


@celery.task(bind=True, max_retries=3, default_retry_delay=60)
def post_attachment_cleaner_task(self, request_id: str):
    """
    Daily task to remove attachment files of old posts.

    Runs at 03:00 daily. For every not yet cleaned post older than
    ATTACHMENT_RETENTION_DAYS that lists attachments:
    1. Deletes each referenced object from MinIO (a missing object counts as deleted)
    2. Logs and skips any other deletion failure
    3. Empties the post's attachments and stamps attachments_cleaned_at

    A failing post is rolled back and the run moves on to the next one.

    Args:
        request_id: The request ID for tracking purposes (provided by Celery Beat configuration)
    """
    with request_id_scope(request_id):
        return asyncio.run(_async_post_attachment_cleaner(request_id))


async def _async_post_attachment_cleaner(
    request_id: str, storage_service: Optional[MinIOStorageService] = None
):
    logger = get_logger().bind(request_id=request_id)

    for db_session in get_sync_session():
        try:
            now = naive_utc_now()
            cutoff = now - timedelta(days=settings.ATTACHMENT_RETENTION_DAYS)

            result = db_session.execute(
                select(Post)
                .where(
                    and_(
                        Post.created_at < cutoff,
                        Post.attachments_cleaned_at.is_(None),
                        Post.attachments.is_not(None),
                    )
                )
                .order_by(Post.created_at)
            )
            posts = [post for post in result.scalars().all() if post.attachments]

            if not posts:
                logger.info("No aged posts with attachments")
                return {
                    "success": True,
                    "cleaned_posts": 0,
                    "deleted_files": 0,
                    "missing_files": 0,
                    "failed_files": 0,
                    "failed_posts": 0,
                    "request_id": request_id,
                }

            storage_service = storage_service or get_storage_service()
            totals = {"deleted": 0, "missing": 0, "failed": 0}
            cleaned_posts = 0
            failed_posts = 0

            for post in posts:
                post_id = post.id
                try:
                    counts = await _delete_post_attachments(
                        storage_service, post_id, post.attachments, request_id
                    )
                    _clear_attachments(db_session, post, now)

                    for key, value in counts.items():
                        totals[key] += value
                    cleaned_posts += 1
                except Exception as e:
                    db_session.rollback()
                    failed_posts += 1
                    logger.error(
                        "Failed to clean post attachments",
                        post_id=post_id,
                        error=str(e),
                        exc_info=True,
                    )

            logger.info(
                "Post attachment cleanup completed",
                cleaned_posts=cleaned_posts,
                deleted_files=totals["deleted"],
                missing_files=totals["missing"],
                failed_files=totals["failed"],
                failed_posts=failed_posts,
                cutoff=cutoff.isoformat(),
            )

            return {
                "success": True,
                "cleaned_posts": cleaned_posts,
                "deleted_files": totals["deleted"],
                "missing_files": totals["missing"],
                "failed_files": totals["failed"],
                "failed_posts": failed_posts,
                "request_id": request_id,
            }
        except Exception as e:
            logger.error(
                "Post attachment cleaner task exception",
                request_id=request_id,
                error=str(e),
                exc_info=True,
            )
            return {
                "success": False,
                "error": str(e),
                "request_id": request_id,
            }


async def _delete_post_attachments(
    storage_service: MinIOStorageService,
    post_id: str,
    attachments: List[Dict[str, Any]],
    request_id: str,
) -> Dict[str, int]:
    """Best-effort delete of every attachment file of one post."""
    logger = get_logger().bind(request_id=request_id, post_id=post_id)
    counts = {"deleted": 0, "missing": 0, "failed": 0}

    for attachment in attachments:
        storage_path = (
            attachment.get("storagePath") if isinstance(attachment, dict) else None
        )
        if not storage_path:
            logger.warning("Attachment without storage path", attachment=attachment)
            counts["failed"] += 1
            continue

        try:
            await storage_service.delete_object(storage_path)
            counts["deleted"] += 1
        except StorageObjectNotFoundError:
            logger.debug("Attachment already gone", storage_path=storage_path)
            counts["missing"] += 1
        except Exception as e:
            # The reference is cleared below regardless, leaving the object orphaned
            logger.error(
                "Failed to delete attachment",
                storage_path=storage_path,
                error=str(e),
            )
            counts["failed"] += 1

    return counts


def _clear_attachments(db_session: Session, post: Post, now) -> None:
    post.attachments = []
    post.attachments_cleaned_at = now
    db_session.commit()
