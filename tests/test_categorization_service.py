import asyncio
import json

import pytest

from conftest import (
    FakeLLM,
    InMemoryPredictions,
    InMemoryReceipts,
    llm_decision,
    make_receipt,
)
from packages.common.config import Settings
from packages.common.exceptions import ReceiptNotFoundError
from packages.common.schemas.receipt import CategorySource, PredictionMethod, ReceiptStatus
from packages.domain.categorization.categorization_service import (
    REASON_NO_MATCH,
    REASON_UNCATEGORIZED,
    CategorizationService,
)
from packages.domain.categorization.rules_engine import parse_rules_pack
from packages.domain.categorization.schemas import LLMFailure, LLMFailureReason


def build_service(rules_pack, receipts, predictions, llm, **settings_overrides):
    settings = Settings(
        rules_confidence_threshold=settings_overrides.pop("threshold", 0.75),
        llm_always_evaluate=settings_overrides.pop("always_evaluate", False),
    )
    return CategorizationService(
        llm=llm,
        receipts=receipts,
        predictions=predictions,
        settings=settings,
        rules_loader=lambda: rules_pack,
    )


def run(service, receipt_id, **kwargs):
    return asyncio.run(service.categorize_receipt(receipt_id, db=None, **kwargs))


def timeout_failure():
    return LLMFailure(reason=LLMFailureReason.TIMEOUT, error="LLM call exceeded 8.0s", model="fake-model")


class TestRulesPath:

    def test_confident_rule_finalizes_without_llm(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-sbux", vendor_text="STARBUCKS STORE #4521"))
        llm = FakeLLM(llm_decision())
        service = build_service(rules_pack, receipts, predictions, llm)

        outcome = run(service, "r-sbux")

        assert outcome.to_response() == {
            "ok": True,
            "receipt_id": "r-sbux",
            "category_id": 20,
            "category": "Meals",
            "confidence": 0.9,
            "method": "rule",
            "category_source": "rules",
        }
        assert llm.calls == []

        stored = receipts.receipts["r-sbux"]
        assert stored.status == ReceiptStatus.CATEGORIZED
        assert (stored.category_id, stored.category, stored.category_confidence) == (20, "Meals", 0.9)
        assert stored.category_source == CategorySource.RULES

        [prediction] = predictions.rows
        assert prediction.method == PredictionMethod.RULE
        assert prediction.version == "rules@test-1"
        assert prediction.details == {"source": "vendor", "pattern": "starbucks"}

    def test_threshold_is_inclusive(self, receipts, predictions):
        pack = parse_rules_pack(json.dumps({
            "version": "edge",
            "vendors": [{"pattern": "acme", "category": "Supplies", "confidence": 0.75}],
        }))
        receipts.add(make_receipt("r-edge", vendor_text="ACME"))
        llm = FakeLLM(llm_decision())

        outcome = run(build_service(pack, receipts, predictions, llm), "r-edge")

        assert outcome.category_source == CategorySource.RULES
        assert llm.calls == []

    def test_min_confidence_override(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-hd", vendor_text="THE HOME DEPOT #0612"))
        llm = FakeLLM(llm_decision("Repairs and Maintenance", 0.8, 0.8))
        service = build_service(rules_pack, receipts, predictions, llm)

        outcome = run(service, "r-hd", min_confidence=0.5)

        assert outcome.category == "Supplies"
        assert outcome.confidence == 0.6
        assert outcome.category_source == CategorySource.RULES
        assert llm.calls == []


class TestLLMPath:

    def test_no_rule_uses_llm_with_clamped_confidence(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-xyz", vendor_text="XYZ CORP 2481"))
        llm = FakeLLM(llm_decision("Office Expense", confidence=0.85, raw=0.99))

        outcome = run(build_service(rules_pack, receipts, predictions, llm), "r-xyz")

        body = outcome.to_response()
        assert body["ok"] is True
        assert body["category_id"] == 12
        assert body["category"] == "Office Expense"
        assert body["confidence"] == 0.85
        assert body["method"] == "llm"
        assert body["category_source"] == "llm"
        assert body["reasoning"]

        stored = receipts.receipts["r-xyz"]
        assert stored.category_confidence == 0.85
        assert stored.category_source == CategorySource.LLM

        [prediction] = predictions.rows
        assert prediction.method == PredictionMethod.LLM
        assert prediction.version == "llm@fake-model"
        assert prediction.category_id == 12
        assert prediction.details["raw_confidence"] == 0.99
        assert prediction.details["vendor"] == "XYZ CORP 2481"

    def test_llm_audit_row_stores_scrubbed_vendor(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-ph", vendor_text="XYZ CORP (512) 555-0199"))
        llm = FakeLLM(llm_decision("Office Expense", 0.8, 0.8))

        run(build_service(rules_pack, receipts, predictions, llm), "r-ph")

        [prediction] = predictions.rows
        assert prediction.details["vendor"] == "XYZ CORP [PHONE]"

    def test_weak_rule_defers_to_llm(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-hd", vendor_text="HOME DEPOT"))
        llm = FakeLLM(llm_decision("Repairs and Maintenance", 0.8, 0.8))

        outcome = run(build_service(rules_pack, receipts, predictions, llm), "r-hd")

        assert outcome.category == "Repairs and Maintenance"
        assert outcome.category_source == CategorySource.LLM
        assert [p.method for p in predictions.rows] == [PredictionMethod.RULE, PredictionMethod.LLM]

    def test_llm_sees_the_stored_receipt(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-xyz", vendor_text="XYZ CORP 2481", items=[("WIDGET", "9.99")]))
        llm = FakeLLM(llm_decision())

        run(build_service(rules_pack, receipts, predictions, llm), "r-xyz")

        [seen] = llm.calls
        assert seen.vendor_text == "XYZ CORP 2481"
        assert seen.line_items[0].description == "WIDGET"


class TestFallback:

    def test_llm_failure_falls_back_to_weak_rule(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-hd", vendor_text="HOME DEPOT"))
        llm = FakeLLM(timeout_failure())

        outcome = run(build_service(rules_pack, receipts, predictions, llm), "r-hd")

        assert outcome.ok
        assert outcome.fallback
        assert outcome.category == "Supplies"
        assert outcome.confidence == 0.6
        assert outcome.category_source == CategorySource.RULES
        assert outcome.to_response()["note"] == "LLM failed (timeout), fell back to rules"

        failed = predictions.for_method(PredictionMethod.LLM)
        assert len(failed) == 1
        assert failed[0].category_id is None
        assert failed[0].confidence is None
        assert failed[0].details["failure"] == "timeout"

    def test_invalid_category_falls_back(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-hd", vendor_text="HOME DEPOT"))
        llm = FakeLLM(LLMFailure(reason=LLMFailureReason.INVALID_CATEGORY, error="Entertainment"))

        outcome = run(build_service(rules_pack, receipts, predictions, llm), "r-hd")

        assert outcome.category == "Supplies"
        assert outcome.fallback


class TestNeedsReview:

    def test_llm_failure_without_rule(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-acme", vendor_text="ACME 77"))
        llm = FakeLLM(timeout_failure())

        outcome = run(build_service(rules_pack, receipts, predictions, llm), "r-acme")

        assert outcome.to_response() == {"ok": False, "reason": REASON_UNCATEGORIZED, "receipt_id": "r-acme"}

        stored = receipts.receipts["r-acme"]
        assert stored.status == ReceiptStatus.CATEGORIZED
        assert stored.category_id is None
        assert stored.category is None
        assert stored.category_confidence is None
        assert stored.needs_review
        assert receipts.finalize_calls == []

    def test_unconfigured_llm_reports_no_match(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-acme", vendor_text="ACME 77"))
        llm = FakeLLM(LLMFailure(reason=LLMFailureReason.NOT_CONFIGURED, error="disabled"))

        outcome = run(build_service(rules_pack, receipts, predictions, llm), "r-acme")

        assert outcome.reason == REASON_NO_MATCH
        assert receipts.receipts["r-acme"].needs_review
        assert predictions.rows == []

    def test_previous_category_is_cleared(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt(
            "r-old", vendor_text="ACME 77",
            status=ReceiptStatus.CATEGORIZED, category_id=20, category="Meals",
            category_confidence=0.9, category_source=CategorySource.RULES,
        ))

        run(build_service(rules_pack, receipts, predictions, FakeLLM(timeout_failure())), "r-old")

        assert receipts.receipts["r-old"].category_id is None
        assert receipts.receipts["r-old"].category_source is None


class TestShadowEvaluation:

    def test_confident_rule_still_audits_llm(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-sbux", vendor_text="STARBUCKS"))
        llm = FakeLLM(llm_decision("Travel", 0.85, 0.9))

        outcome = run(
            build_service(rules_pack, receipts, predictions, llm, always_evaluate=True),
            "r-sbux",
        )

        assert outcome.category == "Meals"
        assert outcome.category_source == CategorySource.RULES
        assert len(llm.calls) == 1

        [shadow] = predictions.for_method(PredictionMethod.LLM)
        assert shadow.category_id == 19
        assert shadow.details["shadow"] is True
        assert receipts.receipts["r-sbux"].category == "Meals"

    def test_shadow_failure_is_audited(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-sbux", vendor_text="STARBUCKS"))

        outcome = run(
            build_service(rules_pack, receipts, predictions, FakeLLM(timeout_failure()), always_evaluate=True),
            "r-sbux",
        )

        assert outcome.category == "Meals"
        assert not outcome.fallback
        [shadow] = predictions.for_method(PredictionMethod.LLM)
        assert shadow.details == {"failure": "timeout", "error": "LLM call exceeded 8.0s", "shadow": True}


class TestErrors:

    def test_unknown_receipt(self, rules_pack, receipts, predictions):
        service = build_service(rules_pack, receipts, predictions, FakeLLM())

        with pytest.raises(ReceiptNotFoundError):
            run(service, "missing")

        assert predictions.rows == []

    def test_finalize_failure_propagates(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-sbux", vendor_text="STARBUCKS"))
        receipts.fail_finalize = RuntimeError("connection reset")

        with pytest.raises(RuntimeError):
            run(build_service(rules_pack, receipts, predictions, FakeLLM()), "r-sbux")

        # Audit entry survives a failed finalize
        assert len(predictions.rows) == 1
        assert receipts.receipts["r-sbux"].status == ReceiptStatus.OCR_DONE

    def test_audit_failure_does_not_block_finalize(self, rules_pack, receipts):
        class BrokenPredictions(InMemoryPredictions):
            async def record(self, *args, **kwargs):
                return False

        receipts.add(make_receipt("r-sbux", vendor_text="STARBUCKS"))

        outcome = run(build_service(rules_pack, receipts, BrokenPredictions(), FakeLLM()), "r-sbux")

        assert outcome.ok
        assert receipts.receipts["r-sbux"].category == "Meals"


class TestIdempotence:

    def test_rerun_gives_same_result(self, rules_pack, receipts, predictions):
        receipts.add(make_receipt("r-sbux", vendor_text="STARBUCKS STORE #4521"))
        service = build_service(rules_pack, receipts, predictions, FakeLLM())

        first = run(service, "r-sbux")
        stored_first = receipts.receipts["r-sbux"]
        second = run(service, "r-sbux")
        stored_second = receipts.receipts["r-sbux"]

        assert first.to_response() == second.to_response()
        assert stored_first.model_dump(exclude={"updated_at"}) == stored_second.model_dump(exclude={"updated_at"})
        assert len(predictions.rows) == 2


class TestCategorizePending:

    def test_processes_ocr_done_and_isolates_failures(self, rules_pack, predictions):
        receipts = InMemoryReceipts([
            make_receipt("r-1", vendor_text="STARBUCKS"),
            make_receipt("r-2", vendor_text="ACME 77"),
            make_receipt("r-3", vendor_text="DONE", status=ReceiptStatus.CATEGORIZED),
        ])

        class FlakyLLM(FakeLLM):
            async def classify(self, receipt):
                raise RuntimeError("boom")

        class Session:
            rollbacks = 0

            async def rollback(self):
                Session.rollbacks += 1

        service = build_service(rules_pack, receipts, predictions, FlakyLLM())
        summary = asyncio.run(service.categorize_pending(Session(), limit=10))

        assert summary["processed"] == 2
        assert summary["succeeded"] == 1
        assert summary["failed"] == 1
        assert Session.rollbacks == 1

        by_id = {r["receipt_id"]: r for r in summary["results"]}
        assert by_id["r-1"]["success"] is True
        assert by_id["r-1"]["result"]["category"] == "Meals"
        assert by_id["r-2"]["success"] is False
        assert "boom" in by_id["r-2"]["error"]

    def test_respects_limit(self, rules_pack, predictions):
        receipts = InMemoryReceipts([make_receipt(f"r-{i}", vendor_text="STARBUCKS") for i in range(5)])
        service = build_service(rules_pack, receipts, predictions, FakeLLM())

        summary = asyncio.run(service.categorize_pending(None, limit=2))

        assert summary["processed"] == 2
