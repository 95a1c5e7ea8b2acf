import asyncio
from typing import Optional

from minio import Minio
from minio.error import S3Error

from groupcal_jobs.config.settings import settings
from groupcal_jobs.utils.errors import StorageError, StorageObjectNotFoundError

NOT_FOUND_CODES = ("NoSuchKey", "NoSuchObject", "ResourceNotFound")


class MinIOStorageService:
    """Service for deleting post attachments from MinIO object storage"""

    def __init__(self, client: Optional[Minio] = None, bucket_name: Optional[str] = None):
        self.client = client or Minio(
            endpoint=settings.MINIO_ENDPOINT,
            access_key=settings.MINIO_ACCESS_KEY,
            secret_key=settings.MINIO_SECRET_KEY,
            secure=settings.MINIO_SECURE,
        )
        self.bucket_name = bucket_name or settings.MINIO_BUCKET_NAME

    async def delete_object(self, object_name: str) -> None:
        """
        Delete a single object by its storage path.

        S3 deletes are idempotent, so the object is stat'ed first to tell a
        missing object apart from a successful delete.

        Args:
            object_name: Storage path of the object

        Raises:
            StorageObjectNotFoundError: If the object does not exist
            StorageError: For any other storage failure
        """

        def _delete_sync():
            self.client.stat_object(self.bucket_name, object_name)
            self.client.remove_object(self.bucket_name, object_name)

        try:
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, _delete_sync)
        except S3Error as e:
            if e.code in NOT_FOUND_CODES:
                raise StorageObjectNotFoundError(object_name)
            raise StorageError(
                f"Failed to delete '{object_name}' from MinIO: {str(e)}",
                error_code="STORAGE_DELETE_FAILED",
            )


def get_storage_service() -> MinIOStorageService:
    """Factory for the object storage service used by the tasks"""
    return MinIOStorageService()
