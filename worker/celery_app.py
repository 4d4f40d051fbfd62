from celery import Celery

from app.core.config import settings

celery = Celery(
    "courier-sync-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.prepare_export_queue": {"queue": "export"},
        "worker.tasks.dispatch_export_queue": {"queue": "export"},
        "worker.tasks.apply_courier_events": {"queue": "apply"},
    },
    beat_schedule={
        "prepare-export-queue": {
            "task": "worker.tasks.prepare_export_queue",
            "schedule": float(settings.drain_interval_seconds),
        },
        "dispatch-export-queue": {
            "task": "worker.tasks.dispatch_export_queue",
            "schedule": float(settings.drain_interval_seconds),
        },
        "apply-courier-events": {
            "task": "worker.tasks.apply_courier_events",
            "schedule": float(settings.drain_interval_seconds),
        },
    },
)
