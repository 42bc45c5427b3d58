"""
Receipt schemas (Pydantic models)

Read model for the receipts table as produced by the OCR extractor, plus the
append-only prediction (audit) record.
"""
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReceiptStatus(str, Enum):
    """Receipt processing status"""
    OCR_DONE = "ocr_done"          # Extracted, waiting for categorization
    CATEGORIZED = "categorized"    # Null category fields = needs review


class CategorySource(str, Enum):
    """Stage that produced the finalized category"""
    RULES = "rules"
    LLM = "llm"


class PredictionMethod(str, Enum):
    """Method recorded on an audit prediction"""
    RULE = "rule"
    LLM = "llm"


class LineItem(BaseModel):
    """Single extracted line item"""
    model_config = ConfigDict(extra="ignore")

    description: Optional[str] = None
    total: Optional[Decimal] = None


class Receipt(BaseModel):
    """
    Receipt record as stored by the OCR extractor.

    Extracted fields are read-only to the categorization pipeline; only the
    category_* fields and status are written back.
    """
    model_config = ConfigDict(
        extra="ignore",
        json_schema_extra={
            "example": {
                "id": "3f1c1b9e-2a52-4a43-9a55-1d0c3c4f2a10",
                "status": "ocr_done",
                "vendor_text": "STARBUCKS STORE #4521",
                "total": 7.85,
                "subtotal": 7.25,
                "tax": 0.60,
                "receipt_date": "2025-03-14",
                "line_items": [{"description": "GRANDE LATTE", "total": 5.45}],
            }
        },
    )

    id: str
    status: ReceiptStatus = ReceiptStatus.OCR_DONE

    # Extracted
    vendor_text: Optional[str] = None
    total: Optional[Decimal] = None
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    tax_breakdown: Optional[Any] = None
    receipt_date: Optional[date] = None
    line_items: List[LineItem] = Field(default_factory=list)
    raw_ocr: Optional[str] = None

    # Classification
    category_id: Optional[int] = None
    category: Optional[str] = None
    category_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    category_source: Optional[CategorySource] = None

    updated_at: Optional[datetime] = None

    @property
    def needs_review(self) -> bool:
        return self.status == ReceiptStatus.CATEGORIZED and self.category_id is None


class Prediction(BaseModel):
    """Append-only audit record of one classification attempt"""
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    subject_type: str = "receipt"
    subject_id: str
    category_id: Optional[int] = None
    confidence: Optional[float] = None
    method: PredictionMethod
    version: str
    details: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None
