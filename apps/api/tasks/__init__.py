"""
Celery app for the scheduled WHOOP sync.

Tasks are defined here and imported by both the API (to enqueue) and
the worker (to execute).
"""
from celery import Celery
from core.config import settings
from celerybeat_schedule import beat_schedule

# Create Celery app instance
celery_app = Celery(
    "wearable_integration",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=15 * 60,  # a full sync_all pass must finish before the next beat tick
    task_soft_time_limit=12 * 60,
    worker_prefetch_multiplier=1,
    beat_schedule=beat_schedule,
)

# Import tasks to register them
from . import whoop_tasks  # noqa: E402

__all__ = ["celery_app"]
