"""
Celery application configuration for background categorization
"""
from celery import Celery
from celery.signals import worker_process_init
import structlog

from packages.common.config import get_settings
from packages.common.logging_setup import configure_logging

logger = structlog.get_logger()
settings = get_settings()

# Create Celery app
app = Celery(
    "receipt_categorizer_worker",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
)

# Celery configuration
app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    task_time_limit=900,  # 15 minutes hard limit (batch of 100 × 8s LLM timeout)
    task_soft_time_limit=840,

    # Result backend settings
    result_expires=3600,  # Results expire after 1 hour
    result_extended=True,

    # Worker settings
    worker_prefetch_multiplier=1,
    worker_max_tasks_per_child=200,

    # Task routing
    task_routes={
        "services.worker.tasks.categorize_receipt.*": {"queue": "categorize"},
    },

    # Beat schedule (periodic tasks)
    beat_schedule={
        "categorize-pending-receipts": {
            "task": "services.worker.tasks.categorize_receipt.categorize_pending_task",
            "schedule": 900.0,  # Every 15 minutes
            "kwargs": {"limit": settings.categorize_batch_size},
            "options": {"queue": "categorize"},
        },
    },
)

# Import tasks explicitly to register them
from services.worker.tasks import categorize_receipt  # noqa: E402,F401


@worker_process_init.connect
def init_worker(**kwargs):
    """Initialize worker process"""
    configure_logging(settings.log_level)
    logger.info("celery_worker_starting",
                concurrency=kwargs.get("concurrency", "unknown"))


if __name__ == "__main__":
    app.start()
