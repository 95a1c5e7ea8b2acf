from .notification_retention_cleaner import notification_retention_cleaner_task
from .post_attachment_cleaner import post_attachment_cleaner_task
from .push_delivery_retrier import push_delivery_retrier_task
from .scheduled_notification_dispatcher import scheduled_notification_dispatcher_task

__all__ = [
    "scheduled_notification_dispatcher_task",
    "push_delivery_retrier_task",
    "notification_retention_cleaner_task",
    "post_attachment_cleaner_task",
]
