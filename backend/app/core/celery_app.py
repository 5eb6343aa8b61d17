"""
Celery application configuration.

Handles background tasks for:
- Pruning expired webhook dedup records
- Re-syncing subscriptions left pending after an unanswered Stripe call
"""
from celery import Celery
from celery.signals import task_prerun, task_postrun, task_failure

from app.core.config import settings
import logging

logger = logging.getLogger(__name__)

# Create Celery app
celery_app = Celery(
    "creator_billing",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.tasks.cleanup_tasks",
    ]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,
    worker_prefetch_multiplier=1,  # Take one task at a time
    task_acks_late=True,  # Acknowledge task after completion
    task_reject_on_worker_lost=True,  # Requeue task if worker dies
)

# Task routes (assign tasks to specific queues)
celery_app.conf.task_routes = {
    "app.tasks.cleanup_tasks.*": {"queue": "celery"},
}

# Periodic maintenance (run with `celery -A app.core.celery_app beat`)
celery_app.conf.beat_schedule = {
    "prune-processed-events": {
        "task": "app.tasks.cleanup_tasks.prune_processed_events",
        "schedule": 3600.0,
    },
    "reconcile-pending-subscriptions": {
        "task": "app.tasks.cleanup_tasks.reconcile_pending_subscriptions",
        "schedule": 300.0,
    },
}


@task_prerun.connect
def task_prerun_handler(task_id, task, *args, **kwargs):
    """Handler called before task execution."""
    logger.info(f"Task starting: {task.name} (ID: {task_id})")


@task_postrun.connect
def task_postrun_handler(task_id, task, *args, retval=None, **kwargs):
    """Handler called after task execution."""
    logger.info(f"Task completed: {task.name} (ID: {task_id})")


@task_failure.connect
def task_failure_handler(task_id, exception, *args, **kwargs):
    """Handler called on task failure."""
    logger.error(f"Task failed: {task_id}, Exception: {str(exception)}")
