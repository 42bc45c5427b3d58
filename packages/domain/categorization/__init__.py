"""
Categorization Module - Schedule C receipt categorization

Rules first, LLM fallback:
1. Rules Engine: versioned vendor/keyword regex pack → best match + confidence
2. LLM Classifier: Claude picks from the Schedule C allow-list when rules are
   not confident (confidence clamped, failures are soft)
3. Categorization Service: threshold policy, audit log, receipt finalize

Example flow:
- "STARBUCKS STORE #4521" → rule starbucks (0.9) → Meals, source=rules
- "XYZ CORP 2481" → no rule → Claude → Office Expense (0.99 → 0.85), source=llm
- "ACME 77" → no rule, Claude times out → needs review (null category)

The service itself lives in categorization_service and is imported from there;
it depends on the receipt repository, which depends on this package's taxonomy.
"""

from packages.domain.categorization.rules_engine import (
    CompiledRulesPack,
    RulesEngine,
    load_rules_pack,
    normalize_text,
)
from packages.domain.categorization.schemas import (
    CategorizationOutcome,
    LLMDecision,
    LLMFailure,
    LLMFailureReason,
    RuleHit,
)
from packages.domain.categorization.taxonomy import (
    CATEGORY_MAP,
    get_category_id,
    get_category_name,
)

__all__ = [
    'CATEGORY_MAP',
    'CategorizationOutcome',
    'CompiledRulesPack',
    'LLMDecision',
    'LLMFailure',
    'LLMFailureReason',
    'RuleHit',
    'RulesEngine',
    'get_category_id',
    'get_category_name',
    'load_rules_pack',
    'normalize_text',
]
