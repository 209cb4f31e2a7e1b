"""Celery worker configuration.

The beat schedule drains the transactional outbox: notifications, emails and
conversations that a booking change recorded but that were not delivered
inline right after the commit.
"""

from celery import Celery

from sitswap.config import settings

# Create Celery app
celery_app = Celery(
    "sitswap_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["sitswap.tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=300,  # 5 minutes max
    task_soft_time_limit=240,  # Soft limit at 4 minutes

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=4,

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour

    # Beat schedule for periodic tasks
    beat_schedule={
        # Deliver pending outbox effects every minute
        "drain-outbox": {
            "task": "sitswap.tasks.drain_outbox",
            "schedule": 60.0,
        },
    },
)


if __name__ == "__main__":
    celery_app.start()
