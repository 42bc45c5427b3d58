"""
LLM Classifier - Claude-backed receipt categorization

Second stage of receipt categorization, used only when the rules engine has no
confident answer. Builds a bounded, PII-scrubbed prompt from the receipt's
structured fields, calls the Anthropic API under a hard timeout and validates
the free-text answer against the Schedule C allow-list.

Failure handling:
- Timeout, cancelled call, transport error, missing/unparsable JSON, unknown category
  → LLMFailure (never raised to the caller)
- Model confidence is clamped to a ceiling; self-reported confidence is not
  allowed to outrank rule evidence

Example:
- Input: vendor="XYZ CORP 2481", total=129.00
- Claude: {"category": "Office Expense", "confidence": 0.99, "reasoning": "..."}
- Output: LLMDecision(category="Office Expense", category_id=12, confidence=0.85)
"""
import asyncio
import json
import math
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

import anthropic
import structlog

from packages.common.config import get_settings
from packages.common.schemas.receipt import Receipt
from packages.domain.categorization.metrics import llm_calls, llm_latency_seconds
from packages.domain.categorization.pii import strip_pii
from packages.domain.categorization.schemas import LLMDecision, LLMFailure, LLMFailureReason
from packages.domain.categorization.taxonomy import (
    format_allow_list,
    format_guidance,
    get_category_id,
    is_valid_category,
)

logger = structlog.get_logger()

# Prompt bounds
MAX_LINE_ITEMS = 25
MAX_ITEM_DESCRIPTION_CHARS = 80
MAX_OCR_SNIPPET_CHARS = 200
MAX_REASONING_CHARS = 500

# Used when the model omits confidence
DEFAULT_LLM_CONFIDENCE = 0.70

LLMResult = Union[LLMDecision, LLMFailure]


def extract_json_object(text: str) -> Optional[str]:
    """
    Find the first balanced {...} substring in free text.

    Braces inside JSON string literals are ignored. Candidates are tried in
    order; the first one that decodes to a JSON object wins. If none decodes,
    the first balanced candidate is returned so the caller reports it as
    unparsable.

    Returns:
        JSON object text, or None if the text has no balanced braces at all
    """
    if not text:
        return None

    first_candidate = None
    start = text.find("{")

    while start != -1:
        end = _find_balanced_end(text, start)
        if end is not None:
            candidate = text[start:end + 1]
            if first_candidate is None:
                first_candidate = candidate
            try:
                if isinstance(json.loads(candidate), dict):
                    return candidate
            except ValueError:
                pass
        start = text.find("{", start + 1)

    return first_candidate


def _find_balanced_end(text: str, start: int) -> Optional[int]:
    """Index of the brace closing the one at `start`, or None."""
    depth = 0
    in_string = False
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i

    return None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else str(value)


class LLMClassifier:
    """
    Receipt-level Schedule C classifier backed by Anthropic Claude.

    Usage:
        result = await llm_classifier.classify(receipt)
        if isinstance(result, LLMDecision):
            print(result.category, result.confidence)
        else:
            print("fallback needed:", result.reason.value)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_tokens: Optional[int] = None,
        confidence_ceiling: Optional[float] = None,
        enabled: Optional[bool] = None,
        client: Any = None,
    ):
        """
        Initialize LLM classifier.

        Args:
            api_key: Anthropic API key (defaults to ANTHROPIC_API_KEY)
            model: Model id (defaults to LLM_MODEL)
            timeout_seconds: Hard timeout per call (defaults to LLM_TIMEOUT_SECONDS)
            max_tokens: Response token budget (defaults to LLM_MAX_TOKENS)
            confidence_ceiling: Clamp for returned confidence (defaults to LLM_CONFIDENCE_CEILING)
            enabled: Master switch (defaults to LLM_ENABLED)
            client: Pre-built async client (tests inject a fake here)
        """
        settings = get_settings()

        self.api_key = api_key or settings.anthropic_api_key
        self.model = model or settings.llm_model
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self.max_tokens = max_tokens or settings.llm_max_tokens
        self.confidence_ceiling = confidence_ceiling if confidence_ceiling is not None else settings.llm_confidence_ceiling
        self.enabled = settings.llm_enabled if enabled is None else enabled

        if client is not None:
            self.client = client
        elif self.api_key:
            # One attempt per call; the whole call must fit in timeout_seconds
            self.client = anthropic.AsyncAnthropic(
                api_key=self.api_key,
                timeout=self.timeout_seconds,
                max_retries=0,
            )
        else:
            self.client = None
            logger.warning("anthropic_api_key_missing",
                           message="ANTHROPIC_API_KEY not set, LLM categorization disabled")

        # Cost per token (Claude Sonnet 4.5 pricing as of 2025)
        self.input_cost_per_1k = Decimal("0.003")   # $3 per 1M input tokens
        self.output_cost_per_1k = Decimal("0.015")  # $15 per 1M output tokens

    @property
    def version(self) -> str:
        """Version tag recorded on audit predictions"""
        return f"llm@{self.model}"

    @property
    def available(self) -> bool:
        return self.enabled and self.client is not None

    async def classify(self, receipt: Receipt) -> LLMResult:
        """
        Classify a receipt into one Schedule C category.

        Args:
            receipt: Receipt with extracted fields

        Returns:
            LLMDecision with clamped confidence, or LLMFailure
        """
        if not self.available:
            return self._failure(
                LLMFailureReason.NOT_CONFIGURED,
                "LLM disabled" if not self.enabled else "ANTHROPIC_API_KEY not set",
                receipt.id,
            )

        prompt = self.build_prompt(receipt)

        started = time.perf_counter()
        try:
            response = await asyncio.wait_for(
                self.client.messages.create(
                    model=self.model,
                    max_tokens=self.max_tokens,
                    temperature=0.0,  # Deterministic for idempotent re-runs
                    messages=[
                        {
                            "role": "user",
                            "content": prompt
                        }
                    ]
                ),
                timeout=self.timeout_seconds,
            )
        except (asyncio.TimeoutError, anthropic.APITimeoutError):
            return self._failure(
                LLMFailureReason.TIMEOUT,
                f"LLM call exceeded {self.timeout_seconds}s",
                receipt.id,
            )
        except asyncio.CancelledError:
            # Only the call was cancelled; cancellation of the request itself still propagates
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            return self._failure(LLMFailureReason.CANCELLED, "LLM call was cancelled", receipt.id)
        except anthropic.APIError as e:
            return self._failure(LLMFailureReason.TRANSPORT_ERROR, str(e), receipt.id)
        except Exception as e:
            logger.error("llm_call_unexpected_error",
                         receipt_id=receipt.id,
                         error=str(e),
                         exc_info=True)
            return self._failure(LLMFailureReason.TRANSPORT_ERROR, str(e), receipt.id)
        finally:
            llm_latency_seconds.observe(time.perf_counter() - started)

        text = self._response_text(response)
        cost = self._calculate_cost(response)

        logger.info("llm_call_complete",
                    receipt_id=receipt.id,
                    model=self.model,
                    stop_reason=getattr(response, "stop_reason", None),
                    cost_usd=float(cost) if cost is not None else None,
                    text_preview=text[:400])

        result = self.parse_response(text)
        if isinstance(result, LLMFailure):
            return self._failure(result.reason, result.error, receipt.id)

        result.ai_cost_usd = cost
        llm_calls.labels(result="success").inc()

        logger.info("llm_classification_complete",
                    receipt_id=receipt.id,
                    category=result.category,
                    category_id=result.category_id,
                    raw_confidence=result.raw_confidence,
                    confidence=result.confidence)

        return result

    def build_prompt(self, receipt: Receipt) -> str:
        """
        Build the classification prompt.

        Deterministic for a given receipt: same fields in the same order, no
        timestamps. Vendor text, item descriptions and the OCR snippet are
        PII-scrubbed before they are placed in the prompt.
        """
        vendor = strip_pii(receipt.vendor_text.strip()) if receipt.vendor_text and receipt.vendor_text.strip() else "Unknown"

        receipt_data: Dict[str, Any] = {
            "vendor_name": vendor,
            "total": _money(receipt.total) or "Unknown",
        }
        if receipt.subtotal is not None:
            receipt_data["subtotal"] = _money(receipt.subtotal)
        if receipt.tax is not None:
            receipt_data["tax"] = _money(receipt.tax)
        if receipt.tax_breakdown:
            receipt_data["tax_breakdown"] = receipt.tax_breakdown
        if receipt.receipt_date is not None:
            receipt_data["date"] = receipt.receipt_date.isoformat()

        line_items = self._prompt_line_items(receipt)
        if line_items:
            receipt_data["line_items"] = line_items

        # Raw OCR only helps when structured extraction came back thin
        sparse = not line_items or vendor == "Unknown"
        if sparse and receipt.raw_ocr:
            receipt_data["raw_ocr_snippet"] = strip_pii(receipt.raw_ocr)[:MAX_OCR_SNIPPET_CHARS]

        receipt_json = json.dumps(receipt_data, indent=2, ensure_ascii=False, default=str)

        return f"""You are an expert receipt categorizer for US Schedule C business expenses.

You will receive structured data from a receipt: vendor name, totals, tax, date, and line items.
Your job is to return ONE best Schedule C expense category for the entire receipt.

Allowed categories (name → id):
{format_allow_list()}

Guidance:
{format_guidance()}

Receipt Data:
{receipt_json}

Analyze the vendor name and LINE ITEMS to determine the best category. Be confident (0.65–0.95) if the category is clear.

Return ONLY a JSON object with:
- "category": the category name string, exactly as listed above
- "confidence": a number between 0 and 1
- "reasoning": a short explanation"""

    def _prompt_line_items(self, receipt: Receipt) -> List[Dict[str, Any]]:
        items = []
        for item in receipt.line_items[:MAX_LINE_ITEMS]:
            description = (item.description or "").strip()
            if not description:
                continue
            entry: Dict[str, Any] = {"description": strip_pii(description)[:MAX_ITEM_DESCRIPTION_CHARS]}
            if item.total is not None:
                entry["total"] = _money(item.total)
            items.append(entry)
        return items

    def parse_response(self, response_text: str) -> LLMResult:
        """
        Parse and validate the model's free-text answer.

        The response is untrusted: the category must be an exact allow-list
        name and the confidence must be numeric.
        """
        json_text = extract_json_object(response_text)
        if json_text is None:
            return LLMFailure(
                reason=LLMFailureReason.NO_JSON,
                error=f"No JSON object in response: {response_text[:200]!r}",
                model=self.model,
            )

        try:
            data = json.loads(json_text)
        except ValueError as e:
            return LLMFailure(reason=LLMFailureReason.INVALID_JSON, error=str(e), model=self.model)

        if not isinstance(data, dict):
            return LLMFailure(reason=LLMFailureReason.INVALID_JSON, error="JSON is not an object", model=self.model)

        category = data.get("category")
        if not isinstance(category, str) or not is_valid_category(category):
            return LLMFailure(
                reason=LLMFailureReason.INVALID_CATEGORY,
                error=f"Category not in allow-list: {category!r}",
                model=self.model,
            )

        raw_confidence = data.get("confidence")
        if raw_confidence is None:
            raw_confidence = DEFAULT_LLM_CONFIDENCE
        try:
            if isinstance(raw_confidence, bool):
                raise ValueError("boolean confidence")
            raw_confidence = float(raw_confidence)
            if math.isnan(raw_confidence) or math.isinf(raw_confidence):
                raise ValueError("non-finite confidence")
        except (TypeError, ValueError) as e:
            return LLMFailure(
                reason=LLMFailureReason.INVALID_CONFIDENCE,
                error=f"Unusable confidence {data.get('confidence')!r}: {e}",
                model=self.model,
            )

        confidence = max(0.0, min(raw_confidence, self.confidence_ceiling))

        reasoning = data.get("reasoning")
        if reasoning is not None:
            reasoning = str(reasoning)[:MAX_REASONING_CHARS]

        return LLMDecision(
            category=category,
            category_id=get_category_id(category),
            confidence=confidence,
            raw_confidence=raw_confidence,
            reasoning=reasoning,
            model=self.model,
        )

    def _failure(self, reason: LLMFailureReason, error: str, receipt_id: str) -> LLMFailure:
        llm_calls.labels(result=reason.value).inc()
        logger.warning("llm_call_failed",
                       receipt_id=receipt_id,
                       model=self.model,
                       reason=reason.value,
                       error=error)
        return LLMFailure(reason=reason, error=error, model=self.model)

    @staticmethod
    def _response_text(response: Any) -> str:
        for block in getattr(response, "content", None) or []:
            text = getattr(block, "text", None)
            if text:
                return text
        return ""

    def _calculate_cost(self, response: Any) -> Optional[Decimal]:
        """
        Calculate cost of AI API call.

        Returns:
            Total cost in USD, or None if the response carries no usage
        """
        usage = getattr(response, "usage", None)
        if usage is None:
            return None
        input_cost = (Decimal(usage.input_tokens) / 1000) * self.input_cost_per_1k
        output_cost = (Decimal(usage.output_tokens) / 1000) * self.output_cost_per_1k
        return input_cost + output_cost


# Singleton instance
llm_classifier = LLMClassifier()
