from celery.schedules import crontab
from .settings import settings

# Basic Celery Configuration
_redis_auth = f":{settings.REDIS_PASSWORD}@" if settings.REDIS_PASSWORD else ""
broker_url = f"redis://{_redis_auth}{settings.REDIS_HOST}:{settings.REDIS_PORT}/{settings.REDIS_DB}"
result_backend = broker_url

# Task Discovery
include = ["groupcal_jobs.tasks"]

# Timezone Configuration
timezone = settings.SCHEDULER_TIMEZONE
enable_utc = True

# Task Result Configuration
result_expires = 3600

# Task Serialization
task_serializer = "json"
accept_content = ["json"]
result_serializer = "json"

# Task Execution Configuration
task_track_started = True
task_time_limit = 10 * 60  # 10 minutes
task_soft_time_limit = 9 * 60  # 9 minutes

# Worker Configuration
worker_prefetch_multiplier = 1
worker_max_tasks_per_child = 1000

# Delivery is at-least-once; handlers are idempotent
task_acks_late = True
task_reject_on_worker_lost = True

# All scheduled tasks use the SCHEDULER_TIMEZONE (Asia/Seoul by default)
beat_schedule = {
    # Every minute - send reminders that became due
    "scheduled-notification-dispatcher": {
        "task": "groupcal_jobs.tasks.cron.scheduled_notification_dispatcher.scheduled_notification_dispatcher_task",
        "schedule": crontab(),
        "args": ("scheduled_notification_dispatcher_cron",),
    },
    # Every 5 minutes - retry failed push deliveries
    "push-delivery-retrier": {
        "task": "groupcal_jobs.tasks.cron.push_delivery_retrier.push_delivery_retrier_task",
        "schedule": crontab(minute="*/5"),
        "args": ("push_delivery_retrier_cron",),
    },
    # Daily at midnight - purge old terminal notification records
    "notification-retention-cleaner": {
        "task": "groupcal_jobs.tasks.cron.notification_retention_cleaner.notification_retention_cleaner_task",
        "schedule": crontab(hour=0, minute=0),
        "args": ("notification_retention_cleaner_cron",),
    },
    # Daily at 3:00 AM - delete attachments of aged posts
    "post-attachment-cleaner": {
        "task": "groupcal_jobs.tasks.cron.post_attachment_cleaner.post_attachment_cleaner_task",
        "schedule": crontab(hour=3, minute=0),
        "args": ("post_attachment_cleaner_cron",),
    },
}

# Default Queue
task_default_queue = "groupcal"

# Beat Scheduler Configuration
beat_schedule_filename = "tmp/celerybeat-schedule"
