from celery import Celery

from groupcal_jobs.config.settings import settings

# Worker and beat share this app: `celery -A groupcal_jobs.celery worker|beat`
celery = Celery(settings.NAME)

celery.config_from_object("groupcal_jobs.config.celeryconfig")
