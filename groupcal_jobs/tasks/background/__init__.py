from .event_notification_scheduler import event_created_notification_task
from .event_notification_canceller import (
    event_deleted_notification_task,
    event_updated_notification_task,
)
from .group_notification_sync import sync_group_event_notifications_task

__all__ = [
    "event_created_notification_task",
    "event_updated_notification_task",
    "event_deleted_notification_task",
    "sync_group_event_notifications_task",
]
