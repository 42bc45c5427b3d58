"""
Data schemas for categorization module
"""
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from packages.common.schemas.receipt import CategorySource, PredictionMethod


class RuleConfig(BaseModel):
    """
    One vendor or keyword rule as written in the rules pack.

    Validated one rule at a time so a bad rule never rejects the whole pack.
    """
    model_config = ConfigDict(extra="ignore")

    pattern: str = Field(..., min_length=1)
    category: str
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)


class RulesPackConfig(BaseModel):
    """Raw rules pack (RULES_JSON / RULES_FILE / default_rules.json)"""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    version: str = "unversioned"
    vendors: List[Dict[str, Any]] = Field(default_factory=list)
    keywords: List[Dict[str, Any]] = Field(default_factory=list)
    category_map: Optional[Dict[str, int]] = Field(None, alias="categoryMap")


class RuleHit(BaseModel):
    """Best match returned by the rules engine"""
    category_id: int
    category: str
    confidence: float = Field(..., ge=0.0, le=1.0)
    method: PredictionMethod = PredictionMethod.RULE
    details: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "category_id": 20,
                "category": "Meals",
                "confidence": 0.9,
                "method": "rule",
                "details": {"source": "vendor", "pattern": "starbucks"},
            }
        }
    )


class LLMDecision(BaseModel):
    """Validated category decision from the LLM adapter"""
    category: str
    category_id: int
    confidence: float = Field(..., ge=0.0, le=1.0, description="Clamped to the policy ceiling")
    raw_confidence: Optional[float] = Field(None, description="Model-reported confidence before clamping")
    reasoning: Optional[str] = None
    model: str

    # AI cost tracking
    ai_cost_usd: Optional[Decimal] = None


class LLMFailureReason(str, Enum):
    """Why the LLM adapter could not produce a decision"""
    NOT_CONFIGURED = "not_configured"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    TRANSPORT_ERROR = "transport_error"
    NO_JSON = "no_json"
    INVALID_JSON = "invalid_json"
    INVALID_CATEGORY = "invalid_category"
    INVALID_CONFIDENCE = "invalid_confidence"


class LLMFailure(BaseModel):
    """Recoverable adapter failure; triggers the orchestrator's fallback policy"""
    reason: LLMFailureReason
    error: str = ""
    model: Optional[str] = None


class CategorizationOutcome(BaseModel):
    """
    Final decision for one categorization request.

    ok=False means NeedsReview: the receipt was marked categorized with null
    category fields.
    """
    receipt_id: str
    ok: bool

    category_id: Optional[int] = None
    category: Optional[str] = None
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    method: Optional[PredictionMethod] = None
    category_source: Optional[CategorySource] = None

    fallback: bool = False
    reason: Optional[str] = Field(None, description="no_match | uncategorized when ok=False")
    note: Optional[str] = None
    reasoning: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        """HTTP response body for POST /categorize"""
        if not self.ok:
            return {"ok": False, "reason": self.reason, "receipt_id": self.receipt_id}

        body: Dict[str, Any] = {
            "ok": True,
            "receipt_id": self.receipt_id,
            "category_id": self.category_id,
            "category": self.category,
            "confidence": self.confidence,
            "method": self.method.value,
            "category_source": self.category_source.value,
        }
        if self.note:
            body["note"] = self.note
        if self.reasoning:
            body["reasoning"] = self.reasoning
        return body
