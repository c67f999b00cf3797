from celery import Celery, signals
from celery.schedules import crontab
from catalog_sync.config.settings import get_settings
from catalog_sync.core.logging import setup_logging

settings = get_settings()

celery_app = Celery(
    "catalog_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["catalog_sync.tasks.sync_tasks", "catalog_sync.tasks.scheduler_tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=2 * 60 * 60,  # Full product syncs of large catalogs run long
    task_soft_time_limit=110 * 60,
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=1000,
    worker_concurrency=settings.WORKER_CONCURRENCY,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    result_expires=settings.JOB_RESULT_TTL_SECONDS,
    task_ignore_result=False,
    task_store_errors_even_if_ignored=True,
    task_default_queue=settings.SYNC_QUEUE_NAME,
    task_queue_max_priority=9,
    task_default_priority=5,
    broker_transport_options={
        "queue_order_strategy": "priority",
        "priority_steps": list(range(10)),
        "sep": ":",
    },
)

# Periodic tasks configuration
celery_app.conf.beat_schedule = {
    "scheduler-cycle": {
        "task": "catalog_sync.tasks.scheduler_tasks.run_scheduler_cycle",
        "schedule": float(settings.SCHEDULER_INTERVAL_SECONDS),
    },
    "cleanup-old-jobs": {
        "task": "catalog_sync.tasks.scheduler_tasks.cleanup_old_jobs",
        "schedule": float(settings.CLEANUP_INTERVAL_SECONDS),
    },
    "health-check": {
        "task": "catalog_sync.tasks.scheduler_tasks.health_check",
        "schedule": float(settings.HEALTH_CHECK_INTERVAL_SECONDS),
    },
    "recover-stalled-jobs": {
        "task": "catalog_sync.tasks.scheduler_tasks.recover_stalled_jobs",
        "schedule": crontab(minute="*/5"),
    },
}

@signals.setup_logging.connect
def configure_worker_logging(**kwargs):
    setup_logging()

if __name__ == "__main__":
    celery_app.start()
