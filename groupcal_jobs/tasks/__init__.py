from .background import *
from .cron import *

__all__ = [
    "event_created_notification_task",
    "event_updated_notification_task",
    "event_deleted_notification_task",
    "sync_group_event_notifications_task",
    # Scheduled/Cron Tasks
    "scheduled_notification_dispatcher_task",
    "push_delivery_retrier_task",
    "notification_retention_cleaner_task",
    "post_attachment_cleaner_task",
]
