from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from app.core.config import settings
from app.core.logging import configure_logging

# Initialize Celery app
celery_app = Celery(
    "entitlements",
    broker=settings.REDIS_URL or "redis://localhost:6379/0",
    backend=settings.REDIS_URL or "redis://localhost:6379/0"
)

# Celery configurations
celery_app.conf.update(
    task_serializer='json',
    accept_content=['json'],
    result_serializer='json',
    timezone='UTC',
    enable_utc=True,
    # Payment events are short; at-least-once delivery, the idempotency guard dedups
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=120,
    task_soft_time_limit=100,
)

celery_app.conf.beat_schedule = {
    "monthly-limit-reset": {
        "task": "app.tasks.limit_tasks.monthly_reset",
        "schedule": crontab(minute=0, hour=0, day_of_month=1),
    },
    "expire-lapsed-subscriptions": {
        "task": "app.tasks.limit_tasks.expire_subscriptions",
        "schedule": crontab(minute=15, hour=0),
    },
    "repair-plan-drift": {
        "task": "app.tasks.limit_tasks.repair_drift",
        "schedule": crontab(minute=30),
    },
}

# Explicitly include task modules so the worker always registers them (avoids "unregistered task" in production).
celery_app.conf.include = [
    "app.tasks.payment_tasks",
    "app.tasks.limit_tasks",
]


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
