class DatabaseError(Exception):
    """Custom exception for database-related errors."""

    def __init__(self, message: str, error_code: str = "DB_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class PushTransportError(Exception):
    """Raised when a push chunk could not be handed to the Expo push service."""

    def __init__(self, message: str, error_code: str = "PUSH_TRANSPORT_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class StorageError(Exception):
    """Custom exception for object storage errors."""

    def __init__(self, message: str, error_code: str = "STORAGE_ERROR"):
        super().__init__(message)
        self.message = message
        self.error_code = error_code


class StorageObjectNotFoundError(StorageError):
    """Raised when the object to delete does not exist in the bucket."""

    def __init__(self, object_name: str):
        super().__init__(
            f"Object '{object_name}' not found", error_code="STORAGE_NOT_FOUND"
        )
        self.object_name = object_name
