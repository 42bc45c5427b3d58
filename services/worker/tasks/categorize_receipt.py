"""
Receipt categorization tasks

- categorize_receipt_task: one receipt (triggered after OCR or by re-classification)
- categorize_pending_task: sweep of receipts still in ocr_done (beat, every 15 min)

Each task runs its own event loop, so the database engine and the Anthropic
client are created per run and disposed afterwards; neither may outlive the
loop it was created on.
"""
import asyncio
from typing import Any, Dict, Optional

import structlog

from services.worker.celery_app import app
from packages.common.config import get_settings
from packages.common.database import sessionmanager
from packages.common.exceptions import ReceiptNotFoundError
from packages.domain.categorization.categorization_service import CategorizationService
from packages.domain.categorization.llm_classifier import LLMClassifier

logger = structlog.get_logger()


def _build_service() -> CategorizationService:
    return CategorizationService(llm=LLMClassifier())


async def categorize_one(receipt_id: str, min_confidence: Optional[float] = None) -> Dict[str, Any]:
    """Categorize one receipt with a task-scoped database engine."""
    settings = get_settings()
    service = _build_service()

    await sessionmanager.init(settings.database_url)
    try:
        async with sessionmanager.session() as db:
            outcome = await service.categorize_receipt(receipt_id, db, min_confidence=min_confidence)
        return outcome.to_response()
    except ReceiptNotFoundError as e:
        logger.warning("categorize_task_receipt_missing", receipt_id=receipt_id)
        return {"ok": False, "reason": "not_found", "receipt_id": receipt_id, "error": str(e)}
    finally:
        await sessionmanager.close()


async def categorize_pending(limit: int) -> Dict[str, Any]:
    """Categorize up to `limit` receipts waiting in ocr_done."""
    settings = get_settings()
    service = _build_service()

    await sessionmanager.init(settings.database_url)
    try:
        async with sessionmanager.session() as db:
            return await service.categorize_pending(db, limit=limit)
    finally:
        await sessionmanager.close()


@app.task(name="services.worker.tasks.categorize_receipt.categorize_receipt_task")
def categorize_receipt_task(receipt_id: str, min_confidence: Optional[float] = None) -> Dict[str, Any]:
    """
    Categorize a single receipt.

    Args:
        receipt_id: Receipt id
        min_confidence: Optional rules threshold override

    Returns:
        Same body as POST /categorize
    """
    logger.info("categorize_task_started", receipt_id=receipt_id)
    return asyncio.run(categorize_one(receipt_id, min_confidence))


@app.task(name="services.worker.tasks.categorize_receipt.categorize_pending_task")
def categorize_pending_task(limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Categorize receipts that are still in ocr_done.

    Returns:
        Summary: processed, succeeded, failed, results
    """
    limit = limit or get_settings().categorize_batch_size
    logger.info("categorize_pending_task_started", limit=limit)
    return asyncio.run(categorize_pending(limit))
