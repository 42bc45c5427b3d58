"""
Prediction Log - Append-only audit trail of categorization attempts

Every rules hit, LLM decision and LLM failure is inserted into the
predictions table for traceability and offline model evaluation. Rows are
never updated or deleted.

Writes are best-effort: a failed insert is logged and skipped so the
categorization request still finalizes the receipt.
"""
import json
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.schemas.receipt import Prediction, PredictionMethod
from packages.domain.categorization.metrics import audit_write_failures

logger = structlog.get_logger()


class PredictionLog:
    """Repository for the predictions audit table."""

    async def record(
        self,
        subject_id: str,
        category_id: Optional[int],
        confidence: Optional[float],
        method: PredictionMethod,
        version: str,
        details: Optional[Dict[str, Any]],
        db: AsyncSession,
        subject_type: str = "receipt",
    ) -> bool:
        """
        Append one prediction.

        Args:
            subject_id: Receipt id
            category_id: Predicted category (None for a failed attempt)
            confidence: Prediction confidence (None for a failed attempt)
            method: rule | llm
            version: Engine/model tag, e.g. "rules@2025.10" or "llm@claude-sonnet-4-5"
            details: Diagnostic payload (matched pattern, reasoning, failure reason)
            db: Database session

        Returns:
            True if the row was committed, False if the write failed
        """
        query = text("""
            INSERT INTO predictions (
                subject_type,
                subject_id,
                category_id,
                confidence,
                method,
                version,
                details,
                created_at
            ) VALUES (
                :subject_type,
                :subject_id,
                :category_id,
                :confidence,
                :method,
                :version,
                CAST(:details AS JSONB),
                NOW()
            )
        """)

        try:
            await db.execute(query, {
                "subject_type": subject_type,
                "subject_id": subject_id,
                "category_id": category_id,
                "confidence": confidence,
                "method": method.value,
                "version": version,
                "details": json.dumps(details or {}, default=str),
            })
            await db.commit()
        except Exception as e:
            try:
                await db.rollback()
            except Exception as rollback_error:
                logger.warning("prediction_rollback_failed",
                               subject_id=subject_id,
                               error=str(rollback_error))
            audit_write_failures.inc()
            logger.warning("prediction_write_failed",
                           subject_id=subject_id,
                           method=method.value,
                           version=version,
                           error=str(e))
            return False

        logger.debug("prediction_recorded",
                     subject_id=subject_id,
                     method=method.value,
                     category_id=category_id,
                     confidence=confidence)
        return True

    async def list_for_subject(
        self,
        subject_id: str,
        db: AsyncSession,
        subject_type: str = "receipt",
        limit: int = 50,
    ) -> List[Prediction]:
        """Audit history for one subject, newest first."""
        query = text("""
            SELECT
                id,
                subject_type,
                subject_id,
                category_id,
                confidence,
                method,
                version,
                details,
                created_at
            FROM predictions
            WHERE subject_type = :subject_type
              AND subject_id = :subject_id
            ORDER BY created_at DESC
            LIMIT :limit
        """)

        result = await db.execute(query, {
            "subject_type": subject_type,
            "subject_id": subject_id,
            "limit": limit,
        })

        predictions = []
        for row in result.fetchall():
            data = dict(row._mapping)
            data["id"] = str(data["id"])
            details = data.get("details")
            if isinstance(details, str):
                details = json.loads(details)
            data["details"] = details or {}
            predictions.append(Prediction.model_validate(data))
        return predictions


# Singleton instance
prediction_log = PredictionLog()
