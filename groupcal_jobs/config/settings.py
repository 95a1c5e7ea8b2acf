from datetime import timedelta, timezone
from typing import Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    ENVIRONMENT: str = "development"
    NAME: str = "groupcal-jobs"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = ""  # overrides the level from LOG_CONFIG_PATH when set
    LOG_CONFIG_PATH: str = "logging_config.json"

    # Database
    DATABASE_URL: str = "sqlite:///./groupcal_jobs.db"

    # MinIO Object Storage
    MINIO_ENDPOINT: str = "localhost:9000"
    MINIO_ACCESS_KEY: str = "<your-minio-access-key>"
    MINIO_SECRET_KEY: str = "<your-minio-secret-key>"
    MINIO_BUCKET_NAME: str = "groupcal-attachments"
    MINIO_SECURE: bool = False

    # Redis & Celery
    REDIS_PASSWORD: str = ""
    REDIS_HOST: str = "localhost"
    REDIS_PORT: int = 6379
    REDIS_DB: int = 0
    SCHEDULER_TIMEZONE: str = "Asia/Seoul"

    # Expo Push API
    EXPO_PUSH_URL: str = "https://exp.host/--/api/v2/push/send"
    EXPO_ACCESS_TOKEN: Optional[str] = None
    EXPO_PUSH_CHUNK_SIZE: int = 100
    EXPO_REQUEST_TIMEOUT: float = 30.0

    # Event reminders (offset applied to event dates that carry none)
    EVENT_TIMEZONE_OFFSET: str = "+09:00"
    DEFAULT_EVENT_TIME: str = "09:00"
    REMINDER_LEAD_MINUTES: int = 60
    REMINDER_TITLE: str = "Event reminder ⏰"
    REMINDER_BODY_TEMPLATE: str = "In 1 hour: {title}"
    SYNC_WINDOW_DAYS: int = 7

    # Job limits
    DISPATCH_BATCH_SIZE: int = 100
    RETENTION_DAYS: int = 7
    RETENTION_BATCH_SIZE: int = 500
    ATTACHMENT_RETENTION_DAYS: int = 90
    PUSH_RETRY_MAX_ATTEMPTS: int = 3
    PUSH_RETRY_BATCH_SIZE: int = 100

    @field_validator("EVENT_TIMEZONE_OFFSET")
    def validate_offset(cls, v: str) -> str:
        parse_utc_offset(v)
        return v

    @property
    def event_timezone(self) -> timezone:
        return parse_utc_offset(self.EVENT_TIMEZONE_OFFSET)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


def parse_utc_offset(value: str) -> timezone:
    """
    Parse a "+HH:MM" / "-HH:MM" string into a fixed-offset timezone.

    Raises:
        ValueError: If the value is not a valid offset
    """
    text = value.strip()
    if len(text) != 6 or text[0] not in "+-" or text[3] != ":":
        raise ValueError(f"Invalid UTC offset '{value}', expected +HH:MM")

    hours, minutes = int(text[1:3]), int(text[4:6])
    if hours > 23 or minutes > 59:
        raise ValueError(f"Invalid UTC offset '{value}', expected +HH:MM")

    delta = timedelta(hours=hours, minutes=minutes)
    return timezone(delta if text[0] == "+" else -delta)


settings = Settings()
