"""
Shared fixtures: in-memory receipt store, audit log, fake LLM and a fake
Anthropic client. Nothing here touches Postgres, Redis or the network.
"""
import asyncio
import json
import os
from datetime import datetime, timezone
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

# Settings are read at import time by the module singletons
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ["ANTHROPIC_API_KEY"] = ""
os.environ.pop("RULES_JSON", None)
os.environ.pop("RULES_FILE", None)

import pytest

from packages.common.config import Settings
from packages.common.exceptions import ReceiptNotFoundError
from packages.common.schemas.receipt import (
    CategorySource,
    LineItem,
    Prediction,
    PredictionMethod,
    Receipt,
    ReceiptStatus,
)
from packages.domain.categorization.rules_engine import parse_rules_pack
from packages.domain.categorization.schemas import LLMDecision, LLMFailure, LLMFailureReason
from packages.domain.categorization.taxonomy import get_category_name


TEST_RULES = {
    "version": "test-1",
    "vendors": [
        {"pattern": "starbucks", "category": "Meals", "confidence": 0.9},
        {"pattern": "home depot", "category": "Supplies", "confidence": 0.6},
    ],
    "keywords": [
        {"pattern": "latte|espresso", "category": "Meals"},
    ],
}


@pytest.fixture
def rules_pack():
    return parse_rules_pack(json.dumps(TEST_RULES))


@pytest.fixture
def settings():
    return Settings(
        rules_confidence_threshold=0.75,
        llm_always_evaluate=False,
        llm_confidence_ceiling=0.85,
        anthropic_api_key=None,
    )


def make_receipt(receipt_id: str = "r-1", vendor_text: Optional[str] = None, items=None, **kwargs) -> Receipt:
    return Receipt(
        id=receipt_id,
        vendor_text=vendor_text,
        line_items=[LineItem(description=d, total=Decimal(t)) for d, t in (items or [])],
        **kwargs,
    )


class InMemoryReceipts:
    """Stand-in for ReceiptRepository"""

    def __init__(self, receipts: Optional[List[Receipt]] = None):
        self.receipts: Dict[str, Receipt] = {r.id: r for r in receipts or []}
        self.finalize_calls: List[Dict[str, Any]] = []
        self.fail_finalize: Optional[Exception] = None

    def add(self, receipt: Receipt) -> Receipt:
        self.receipts[receipt.id] = receipt
        return receipt

    async def get_receipt(self, receipt_id, db):
        if receipt_id not in self.receipts:
            raise ReceiptNotFoundError(receipt_id)
        return self.receipts[receipt_id].model_copy(deep=True)

    async def finalize_receipt(self, receipt_id, category_id, confidence, category_name, source, db):
        if self.fail_finalize is not None:
            raise self.fail_finalize
        if get_category_name(category_id) != category_name:
            raise ValueError("category mismatch")
        self.finalize_calls.append({
            "receipt_id": receipt_id,
            "category_id": category_id,
            "confidence": confidence,
            "category": category_name,
            "source": source,
        })
        self.receipts[receipt_id] = self.receipts[receipt_id].model_copy(update={
            "category_id": category_id,
            "category": category_name,
            "category_confidence": confidence,
            "category_source": CategorySource(source),
            "status": ReceiptStatus.CATEGORIZED,
            "updated_at": datetime.now(timezone.utc),
        })

    async def mark_needs_review(self, receipt_id, db):
        self.receipts[receipt_id] = self.receipts[receipt_id].model_copy(update={
            "category_id": None,
            "category": None,
            "category_confidence": None,
            "category_source": None,
            "status": ReceiptStatus.CATEGORIZED,
        })

    async def list_receipt_ids_by_status(self, status, db, limit=100):
        return [r.id for r in self.receipts.values() if r.status == status][:limit]


class InMemoryPredictions:
    """Stand-in for PredictionLog"""

    def __init__(self):
        self.rows: List[Prediction] = []

    async def record(self, subject_id, category_id, confidence, method, version, details, db, subject_type="receipt"):
        self.rows.append(Prediction(
            subject_type=subject_type,
            subject_id=subject_id,
            category_id=category_id,
            confidence=confidence,
            method=method,
            version=version,
            details=details or {},
        ))
        return True

    def for_method(self, method: PredictionMethod) -> List[Prediction]:
        return [p for p in self.rows if p.method == method]


class FakeLLM:
    """Stand-in for LLMClassifier returning a canned result"""

    def __init__(self, result=None, model: str = "fake-model"):
        self.result = result or LLMFailure(reason=LLMFailureReason.NOT_CONFIGURED, error="disabled")
        self.model = model
        self.calls: List[Receipt] = []

    @property
    def version(self) -> str:
        return f"llm@{self.model}"

    async def classify(self, receipt):
        self.calls.append(receipt)
        return self.result


def llm_decision(category: str = "Office Expense", confidence: float = 0.85, raw: float = 0.99) -> LLMDecision:
    from packages.domain.categorization.taxonomy import get_category_id
    return LLMDecision(
        category=category,
        category_id=get_category_id(category),
        confidence=confidence,
        raw_confidence=raw,
        reasoning="Vendor looks like a software supplier",
        model="fake-model",
    )


class FakeMessages:
    def __init__(self, text: str = "", exc: Optional[Exception] = None, delay: float = 0.0):
        self.text = text
        self.exc = exc
        self.delay = delay
        self.calls: List[Dict[str, Any]] = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc is not None:
            raise self.exc
        return SimpleNamespace(
            content=[SimpleNamespace(type="text", text=self.text)],
            usage=SimpleNamespace(input_tokens=1000, output_tokens=100),
            stop_reason="end_turn",
        )


class FakeAnthropicClient:
    """Mimics anthropic.AsyncAnthropic().messages.create"""

    def __init__(self, text: str = "", exc: Optional[Exception] = None, delay: float = 0.0):
        self.messages = FakeMessages(text=text, exc=exc, delay=delay)


class FakeResult:
    def __init__(self, rowcount: int = 1, rows=None):
        self.rowcount = rowcount
        self._rows = rows or []

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeSession:
    """Records SQL sent through an AsyncSession-shaped object"""

    def __init__(self, result: Optional[FakeResult] = None, exc: Optional[Exception] = None):
        self.result = result or FakeResult()
        self.exc = exc
        self.executed: List[Any] = []
        self.commits = 0
        self.rollbacks = 0

    async def execute(self, query, params=None):
        self.executed.append((str(query), params))
        if self.exc is not None:
            raise self.exc
        return self.result

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


@pytest.fixture
def receipts():
    return InMemoryReceipts()


@pytest.fixture
def predictions():
    return InMemoryPredictions()


@pytest.fixture
def fake_session():
    return FakeSession()
