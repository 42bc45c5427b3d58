"""Task queue wrappers - API sends task names, never imports worker code."""
from celery import Celery
from packages.common.config import get_settings

settings = get_settings()

celery_app = Celery('receipt_categorizer')
celery_app.conf.broker_url = settings.celery_broker_url
celery_app.conf.result_backend = settings.celery_result_backend


def queue_receipt_categorization(receipt_id: str) -> str:
    """Queue one receipt for categorization."""
    task = celery_app.send_task(
        'services.worker.tasks.categorize_receipt.categorize_receipt_task',
        args=[receipt_id]
    )
    return task.id


def queue_batch_categorization(limit: int) -> str:
    """Queue categorization of pending (ocr_done) receipts."""
    task = celery_app.send_task(
        'services.worker.tasks.categorize_receipt.categorize_pending_task',
        kwargs={"limit": limit}
    )
    return task.id
