"""
Receipts API Router
Read-only views of a receipt's classification and its audit history
"""
import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.database import get_db_session
from packages.common.exceptions import ReceiptNotFoundError
from packages.common.prediction_log import prediction_log
from packages.common.receipt_repository import receipt_repository

logger = structlog.get_logger()
router = APIRouter()


@router.get("/{receipt_id}")
async def get_receipt_classification(
    receipt_id: str,
    db: AsyncSession = Depends(get_db_session),
):
    """
    Get a receipt's current classification

    `needs_review` is true when the receipt is categorized but no method
    produced a confident category.
    """
    try:
        receipt = await receipt_repository.get_receipt(receipt_id, db)
    except ReceiptNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return {
        "receipt_id": receipt.id,
        "status": receipt.status.value,
        "vendor_text": receipt.vendor_text,
        "category_id": receipt.category_id,
        "category": receipt.category,
        "category_confidence": receipt.category_confidence,
        "category_source": receipt.category_source.value if receipt.category_source else None,
        "needs_review": receipt.needs_review,
        "updated_at": receipt.updated_at,
    }


@router.get("/{receipt_id}/predictions")
async def list_receipt_predictions(
    receipt_id: str,
    limit: int = Query(50, ge=1, le=200, description="Max predictions"),
    db: AsyncSession = Depends(get_db_session),
):
    """
    Audit history of categorization attempts for a receipt, newest first
    """
    predictions = await prediction_log.list_for_subject(receipt_id, db, limit=limit)

    logger.debug("predictions_listed", receipt_id=receipt_id, count=len(predictions))

    return {
        "receipt_id": receipt_id,
        "predictions": [p.model_dump(mode="json") for p in predictions],
        "count": len(predictions),
    }
