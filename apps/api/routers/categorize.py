"""
Categorization API Router
Synchronous single-receipt categorization and batch queueing
"""
from typing import Optional

import structlog
from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from apps.api.tasks import queue_batch_categorization
from packages.common.config import get_settings
from packages.common.database import get_db_session
from packages.common.exceptions import ReceiptNotFoundError
from packages.domain.categorization.categorization_service import (
    CategorizationService,
    categorization_service,
)

logger = structlog.get_logger()
router = APIRouter()


class CategorizeRequest(BaseModel):
    """POST /categorize body"""
    receipt_id: Optional[str] = Field(None, description="Receipt to categorize")
    min_confidence: Optional[float] = Field(
        None, ge=0.0, le=1.0, description="Override the rules confidence threshold"
    )


class BatchCategorizeRequest(BaseModel):
    """POST /categorize/batch body"""
    limit: Optional[int] = Field(None, ge=1, le=1000, description="Max receipts to process")


def get_categorization_service() -> CategorizationService:
    """Dependency hook (overridden in tests)"""
    return categorization_service


@router.post("/categorize")
async def categorize_receipt(
    request: Optional[CategorizeRequest] = Body(None),
    db: AsyncSession = Depends(get_db_session),
    service: CategorizationService = Depends(get_categorization_service),
):
    """
    Categorize one receipt (rules first, LLM fallback)

    - **receipt_id**: receipt to categorize
    - **min_confidence**: optional rules threshold override (0-1)

    Returns `{ok: true, category_id, category, confidence, method, category_source}`
    or `{ok: false, reason: "no_match" | "uncategorized"}` when the receipt
    was sent to manual review.
    """
    if request is None or not request.receipt_id or not request.receipt_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="receipt_id required",
        )

    receipt_id = request.receipt_id.strip()

    try:
        outcome = await service.categorize_receipt(
            receipt_id,
            db,
            min_confidence=request.min_confidence,
        )
    except ReceiptNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return outcome.to_response()


@router.post("/categorize/batch", status_code=status.HTTP_202_ACCEPTED)
async def categorize_batch(
    request: Optional[BatchCategorizeRequest] = Body(None),
):
    """
    Queue categorization of receipts waiting in ocr_done

    Runs in the Celery worker; returns the task id immediately.
    """
    limit = (request.limit if request else None) or get_settings().categorize_batch_size

    task_id = queue_batch_categorization(limit=limit)

    logger.info("batch_categorization_queued", task_id=task_id, limit=limit)

    return {
        "message": "Batch categorization queued",
        "task_id": task_id,
        "limit": limit,
    }
