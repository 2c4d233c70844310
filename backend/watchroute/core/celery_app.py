from celery import Celery
from watchroute.core.config import settings

celery_app = Celery(
    "watchroute",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["watchroute.services.tasks"]
)

celery_app.conf.update(
    result_expires=3600,
    task_acks_late=True,
    worker_prefetch_multiplier=1,

    broker_connection_retry_on_startup=True,
    broker_pool_limit=10,

    task_routes={
        'watchroute.services.tasks.run_approval_maintenance': {'queue': 'maintenance'},
    },

    # Scheduled tasks
    beat_schedule={
        "approval-maintenance": {
            "task": "watchroute.services.tasks.run_approval_maintenance",
            "schedule": settings.approval_maintenance_interval,  # every 4 hours by default
        },
    },
    timezone="UTC",
)
