"""
Categorization Service - Orchestrates rules-first, LLM-fallback categorization

Flow per receipt:
1. Rules engine (fast, free): vendor + keyword regex pack
2. Confident rule hit (>= threshold, default 0.75) → finalize source=rules
3. Otherwise ask the LLM classifier
   - Valid answer → finalize source=llm (confidence already clamped)
   - Failure + weaker rule hit → finalize source=rules, marked as fallback
   - Failure + no rule hit → NeedsReview (categorized, null category)

Every attempt is appended to the predictions audit log before the receipt is
finalized. The two writes are not atomic: a crash in between leaves an audit
row with no finalized receipt, which reconciliation must tolerate.

Re-running a receipt is safe: each run re-evaluates from the extracted fields
and overwrites the classification columns.

Example:
- Input: "STARBUCKS STORE #4521", rule starbucks → Meals @ 0.9
- Rules: Meals (0.9 ≥ 0.75) → finalized, no LLM call
- Input: "XYZ CORP 2481", no rule
- LLM: Office Expense @ 0.99 → stored as 0.85 (ceiling)
"""
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from packages.common.config import Settings, get_settings
from packages.common.prediction_log import prediction_log
from packages.common.receipt_repository import receipt_repository
from packages.common.schemas.receipt import (
    CategorySource,
    PredictionMethod,
    Receipt,
    ReceiptStatus,
)
from packages.domain.categorization.llm_classifier import LLMResult, llm_classifier
from packages.domain.categorization.metrics import categorization_outcomes
from packages.domain.categorization.pii import strip_pii
from packages.domain.categorization.rules_engine import (
    CompiledRulesPack,
    load_rules_pack,
    rules_engine,
)
from packages.domain.categorization.schemas import (
    CategorizationOutcome,
    LLMDecision,
    LLMFailure,
    LLMFailureReason,
    RuleHit,
)

logger = structlog.get_logger()

REASON_NO_MATCH = "no_match"
REASON_UNCATEGORIZED = "uncategorized"


class CategorizationService:
    """
    Decision policy sequencing the rules engine and the LLM classifier.

    Usage:
        service = CategorizationService()
        outcome = await service.categorize_receipt("3f1c...", db=db_session)
        if outcome.ok:
            print(outcome.category, outcome.category_source.value)
    """

    def __init__(
        self,
        rules=None,
        llm=None,
        receipts=None,
        predictions=None,
        settings: Optional[Settings] = None,
        rules_loader: Optional[Callable[[], CompiledRulesPack]] = None,
    ):
        """Initialize with collaborators (singletons unless injected)."""
        settings = settings or get_settings()

        self.rules = rules or rules_engine
        self.llm = llm or llm_classifier
        self.receipts = receipts or receipt_repository
        self.predictions = predictions or prediction_log
        self.rules_loader = rules_loader or (lambda: load_rules_pack(settings))

        self.rules_threshold = settings.rules_confidence_threshold
        self.always_evaluate_llm = settings.llm_always_evaluate

    async def categorize_receipt(
        self,
        receipt_id: str,
        db: AsyncSession,
        min_confidence: Optional[float] = None,
    ) -> CategorizationOutcome:
        """
        Categorize one receipt and write the result back.

        Args:
            receipt_id: Receipt id
            db: Database session
            min_confidence: Per-request override of the rules threshold

        Returns:
            CategorizationOutcome (ok=False means NeedsReview)

        Raises:
            ReceiptNotFoundError: Unknown receipt id
            Exception: Finalize write failures propagate
        """
        threshold = self.rules_threshold if min_confidence is None else min_confidence

        with structlog.contextvars.bound_contextvars(receipt_id=receipt_id):
            pack = self.rules_loader()
            receipt = await self.receipts.get_receipt(receipt_id, db)

            logger.info("categorization_started",
                        status=receipt.status.value,
                        rules_version=pack.version,
                        threshold=threshold)

            # Stage 1: Rules
            rule_hit = self.rules.evaluate(pack, receipt.vendor_text, receipt.line_items)

            logger.info("rules_engine_result",
                        matched=rule_hit is not None,
                        category=rule_hit.category if rule_hit else None,
                        confidence=rule_hit.confidence if rule_hit else None)

            if rule_hit:
                await self.predictions.record(
                    subject_id=receipt_id,
                    category_id=rule_hit.category_id,
                    confidence=rule_hit.confidence,
                    method=PredictionMethod.RULE,
                    version=f"rules@{pack.version}",
                    details=rule_hit.details,
                    db=db,
                )

            if rule_hit and rule_hit.confidence >= threshold:
                if self.always_evaluate_llm:
                    await self._shadow_evaluate(receipt, db)
                return await self._finalize_rules(receipt_id, rule_hit, db)

            # Stage 2: LLM
            logger.info("rules_insufficient_calling_llm",
                        rules_confidence=rule_hit.confidence if rule_hit else None)

            llm_result = await self.llm.classify(receipt)
            await self._record_llm(receipt, llm_result, db)

            if isinstance(llm_result, LLMDecision):
                return await self._finalize_llm(receipt_id, llm_result, db)

            # Stage 3: Graceful degradation
            if rule_hit:
                return await self._finalize_rules(receipt_id, rule_hit, db, failure=llm_result)

            return await self._needs_review(receipt_id, llm_result, db)

    async def categorize_pending(
        self,
        db: AsyncSession,
        limit: int = 100,
    ) -> Dict[str, Any]:
        """
        Categorize receipts still waiting in ocr_done, oldest first.

        Processes receipts sequentially; one failing receipt does not stop the
        batch.

        Returns:
            Summary dict: processed, succeeded, failed, results
        """
        receipt_ids = await self.receipts.list_receipt_ids_by_status(
            ReceiptStatus.OCR_DONE, db, limit=limit
        )

        logger.info("batch_categorization_started", receipt_count=len(receipt_ids))

        results = []
        succeeded = 0
        failed = 0

        for receipt_id in receipt_ids:
            try:
                outcome = await self.categorize_receipt(receipt_id, db)
            except Exception as e:
                failed += 1
                await db.rollback()
                logger.error("batch_categorization_item_failed",
                             receipt_id=receipt_id,
                             error=str(e),
                             exc_info=True)
                results.append({"receipt_id": receipt_id, "success": False, "error": str(e)})
                continue

            succeeded += 1
            results.append({"receipt_id": receipt_id, "success": True, "result": outcome.to_response()})

        logger.info("batch_categorization_complete",
                    processed=len(results),
                    succeeded=succeeded,
                    failed=failed)

        return {
            "processed": len(results),
            "succeeded": succeeded,
            "failed": failed,
            "results": results,
        }

    async def _finalize_rules(
        self,
        receipt_id: str,
        rule_hit: RuleHit,
        db: AsyncSession,
        failure: Optional[LLMFailure] = None,
    ) -> CategorizationOutcome:
        await self.receipts.finalize_receipt(
            receipt_id=receipt_id,
            category_id=rule_hit.category_id,
            confidence=rule_hit.confidence,
            category_name=rule_hit.category,
            source=CategorySource.RULES,
            db=db,
        )

        fallback = failure is not None
        categorization_outcomes.labels(outcome="rules_fallback" if fallback else "rules").inc()

        logger.info("categorized_by_rules",
                    category=rule_hit.category,
                    confidence=rule_hit.confidence,
                    fallback=fallback,
                    llm_failure=failure.reason.value if failure else None)

        return CategorizationOutcome(
            receipt_id=receipt_id,
            ok=True,
            category_id=rule_hit.category_id,
            category=rule_hit.category,
            confidence=rule_hit.confidence,
            method=PredictionMethod.RULE,
            category_source=CategorySource.RULES,
            fallback=fallback,
            note=f"LLM failed ({failure.reason.value}), fell back to rules" if failure else None,
        )

    async def _finalize_llm(
        self,
        receipt_id: str,
        decision: LLMDecision,
        db: AsyncSession,
    ) -> CategorizationOutcome:
        await self.receipts.finalize_receipt(
            receipt_id=receipt_id,
            category_id=decision.category_id,
            confidence=decision.confidence,
            category_name=decision.category,
            source=CategorySource.LLM,
            db=db,
        )

        categorization_outcomes.labels(outcome="llm").inc()

        logger.info("categorized_by_llm",
                    category=decision.category,
                    confidence=decision.confidence,
                    raw_confidence=decision.raw_confidence)

        return CategorizationOutcome(
            receipt_id=receipt_id,
            ok=True,
            category_id=decision.category_id,
            category=decision.category,
            confidence=decision.confidence,
            method=PredictionMethod.LLM,
            category_source=CategorySource.LLM,
            reasoning=decision.reasoning,
        )

    async def _needs_review(
        self,
        receipt_id: str,
        failure: LLMFailure,
        db: AsyncSession,
    ) -> CategorizationOutcome:
        await self.receipts.mark_needs_review(receipt_id, db)

        categorization_outcomes.labels(outcome="needs_review").inc()

        # no_match: nothing could have categorized it; uncategorized: the LLM tried and failed
        reason = REASON_NO_MATCH if failure.reason == LLMFailureReason.NOT_CONFIGURED else REASON_UNCATEGORIZED

        logger.info("categorization_needs_review",
                    reason=reason,
                    llm_failure=failure.reason.value)

        return CategorizationOutcome(
            receipt_id=receipt_id,
            ok=False,
            reason=reason,
            note=failure.error or None,
        )

    async def _shadow_evaluate(self, receipt: Receipt, db: AsyncSession) -> None:
        """Call the LLM for the audit log only; the rule decision stands."""
        logger.info("llm_shadow_evaluation")
        llm_result = await self.llm.classify(receipt)
        await self._record_llm(receipt, llm_result, db, shadow=True)

    async def _record_llm(
        self,
        receipt: Receipt,
        result: LLMResult,
        db: AsyncSession,
        shadow: bool = False,
    ) -> None:
        if isinstance(result, LLMDecision):
            details: Dict[str, Any] = {
                "vendor": strip_pii(receipt.vendor_text),
                "total": str(receipt.total) if receipt.total is not None else None,
                "reasoning": result.reasoning or "No reasoning provided",
                "raw_confidence": result.raw_confidence,
            }
            if shadow:
                details["shadow"] = True
            await self.predictions.record(
                subject_id=receipt.id,
                category_id=result.category_id,
                confidence=result.confidence,
                method=PredictionMethod.LLM,
                version=self.llm.version,
                details=details,
                db=db,
            )
            return

        # A disabled adapter made no attempt; nothing worth auditing
        if result.reason == LLMFailureReason.NOT_CONFIGURED:
            return

        details = {"failure": result.reason.value, "error": result.error}
        if shadow:
            details["shadow"] = True
        await self.predictions.record(
            subject_id=receipt.id,
            category_id=None,
            confidence=None,
            method=PredictionMethod.LLM,
            version=self.llm.version,
            details=details,
            db=db,
        )


# Singleton instance
categorization_service = CategorizationService()
