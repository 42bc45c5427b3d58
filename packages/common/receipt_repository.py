"""
Receipt Repository - Receipt store reads and the categorization finalizer

The receipts table is owned by the OCR extractor. This pipeline reads one
record and writes back only the classification columns:

    category_id, category, category_confidence, category_source,
    status ('ocr_done' → 'categorized'), updated_at

Every write is a single UPDATE so readers never see category_id set while
category or status is stale. Concurrent writers for the same receipt are
last-writer-wins.
"""
import json
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.exceptions import ReceiptNotFoundError
from packages.common.schemas.receipt import CategorySource, Receipt, ReceiptStatus
from packages.domain.categorization.taxonomy import get_category_name

logger = structlog.get_logger()


def _decode_json(value: Any) -> Any:
    """asyncpg hands back json/jsonb columns as text unless a codec is registered"""
    if isinstance(value, (str, bytes)):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class ReceiptRepository:
    """
    Repository for receipt reads and classification writes.
    """

    async def get_receipt(self, receipt_id: str, db: AsyncSession) -> Receipt:
        """
        Fetch one receipt.

        Args:
            receipt_id: Receipt id
            db: Database session

        Returns:
            Receipt

        Raises:
            ReceiptNotFoundError: No receipt with this id
        """
        query = text("""
            SELECT
                id,
                status,
                vendor_text,
                total,
                subtotal,
                tax,
                tax_breakdown,
                receipt_date,
                line_items,
                raw_ocr,
                category_id,
                category,
                category_confidence,
                category_source,
                updated_at
            FROM receipts
            WHERE id = :receipt_id
        """)

        result = await db.execute(query, {"receipt_id": receipt_id})
        row = result.fetchone()

        if row is None:
            logger.info("receipt_not_found", receipt_id=receipt_id)
            raise ReceiptNotFoundError(receipt_id)

        data: Dict[str, Any] = dict(row._mapping)
        data["id"] = str(data["id"])
        data["line_items"] = _decode_json(data.get("line_items")) or []
        data["tax_breakdown"] = _decode_json(data.get("tax_breakdown"))

        return Receipt.model_validate(data)

    async def finalize_receipt(
        self,
        receipt_id: str,
        category_id: int,
        confidence: float,
        category_name: str,
        source: CategorySource,
        db: AsyncSession,
    ) -> None:
        """
        Write the decided category back to the receipt (single atomic UPDATE).

        Args:
            receipt_id: Receipt id
            category_id: Taxonomy id
            confidence: Final confidence (0-1)
            category_name: Taxonomy name matching category_id
            source: Stage that produced the decision
            db: Database session

        Raises:
            ValueError: category_id/category_name disagree with the taxonomy
            ReceiptNotFoundError: Receipt vanished between read and write
        """
        if get_category_name(category_id) != category_name:
            raise ValueError(
                f"Category {category_name!r} does not match taxonomy id {category_id}"
            )
        if not 0.0 <= confidence <= 1.0:
            raise ValueError(f"Confidence {confidence} outside [0, 1]")

        query = text("""
            UPDATE receipts
            SET
                category_id = :category_id,
                category = :category,
                category_confidence = :confidence,
                category_source = :category_source,
                status = :status,
                updated_at = NOW()
            WHERE id = :receipt_id
        """)

        result = await db.execute(query, {
            "receipt_id": receipt_id,
            "category_id": category_id,
            "category": category_name,
            "confidence": confidence,
            "category_source": source.value,
            "status": ReceiptStatus.CATEGORIZED.value,
        })

        if result.rowcount == 0:
            await db.rollback()
            raise ReceiptNotFoundError(receipt_id)

        await db.commit()

        logger.info("receipt_finalized",
                    receipt_id=receipt_id,
                    category_id=category_id,
                    category=category_name,
                    confidence=confidence,
                    category_source=source.value)

    async def mark_needs_review(self, receipt_id: str, db: AsyncSession) -> None:
        """
        Mark a receipt categorized with no category (manual review queue).

        Raises:
            ReceiptNotFoundError: Receipt vanished between read and write
        """
        query = text("""
            UPDATE receipts
            SET
                category_id = NULL,
                category = NULL,
                category_confidence = NULL,
                category_source = NULL,
                status = :status,
                updated_at = NOW()
            WHERE id = :receipt_id
        """)

        result = await db.execute(query, {
            "receipt_id": receipt_id,
            "status": ReceiptStatus.CATEGORIZED.value,
        })

        if result.rowcount == 0:
            await db.rollback()
            raise ReceiptNotFoundError(receipt_id)

        await db.commit()

        logger.info("receipt_marked_needs_review", receipt_id=receipt_id)

    async def list_receipt_ids_by_status(
        self,
        status: ReceiptStatus,
        db: AsyncSession,
        limit: Optional[int] = 100,
    ) -> List[str]:
        """Oldest-first receipt ids in the given status."""
        query = text("""
            SELECT id
            FROM receipts
            WHERE status = :status
            ORDER BY created_at
            LIMIT :limit
        """)

        result = await db.execute(query, {"status": status.value, "limit": limit})
        return [str(row.id) for row in result.fetchall()]


# Singleton instance
receipt_repository = ReceiptRepository()
