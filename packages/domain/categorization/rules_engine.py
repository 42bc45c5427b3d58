"""
Rules Engine - Deterministic vendor/keyword categorization

First stage of receipt categorization: a versioned rules pack of regular
expressions is matched against the receipt's vendor text and line items.

NO AI CALLS - Pure pattern matching, no I/O during evaluation.

Rules pack format (RULES_JSON / RULES_FILE / default_rules.json):
    {
      "version": "2025.10",
      "vendors":  [{"pattern": "starbucks", "category": "Meals", "confidence": 0.9}],
      "keywords": [{"pattern": "latte|espresso", "category": "Meals"}],
      "categoryMap": {"Meals": 20, ...}        # optional, defaults to taxonomy
    }

Matching:
- Vendor rules: regex searched in normalized vendor text (default confidence 0.70)
- Keyword rules: word-bounded regex searched in vendor + line item text
  (default confidence 0.65)
- Highest confidence wins; ties go to the first rule seen (vendors before
  keywords, each in pack order)

Bad rules (invalid regex, unknown category, confidence outside 0-1) are logged
and skipped; they never abort evaluation of the rest of the pack.
"""
import json
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Union

import structlog
from pydantic import ValidationError

from packages.common.config import Settings, get_settings
from packages.common.exceptions import RulesPackError
from packages.common.schemas.receipt import LineItem
from packages.domain.categorization.schemas import RuleConfig, RuleHit, RulesPackConfig
from packages.domain.categorization.taxonomy import CATEGORY_MAP

logger = structlog.get_logger()

DEFAULT_RULES_PATH = Path(__file__).parent / "default_rules.json"

DEFAULT_VENDOR_CONFIDENCE = 0.70
DEFAULT_KEYWORD_CONFIDENCE = 0.65

# Anything that is not a letter, digit or whitespace (underscore counts as punctuation)
_PUNCT_RE = re.compile(r"[^\w\s]|_")
_SPACE_RE = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    """
    Lowercase, turn punctuation into spaces and collapse whitespace.

    Unicode-aware: letters and digits of any script are preserved.

    Example:
        "STARBUCKS STORE #4521" → "starbucks store 4521"
        "Café Zürich, GmbH"     → "café zürich gmbh"
    """
    if not text:
        return ""
    text = _PUNCT_RE.sub(" ", text.lower())
    return _SPACE_RE.sub(" ", text).strip()


@dataclass(frozen=True)
class CompiledRule:
    """Rule with its regex compiled and category resolved"""
    source: str              # "vendor" or "keyword"
    pattern: str
    regex: re.Pattern
    category: str
    category_id: Optional[int]
    confidence: float


@dataclass(frozen=True)
class CompiledRulesPack:
    """Immutable, ready-to-evaluate rules pack"""
    version: str
    vendor_rules: List[CompiledRule] = field(default_factory=list)
    keyword_rules: List[CompiledRule] = field(default_factory=list)
    category_map: Dict[str, int] = field(default_factory=dict)
    skipped_rules: int = 0

    @property
    def rule_count(self) -> int:
        return len(self.vendor_rules) + len(self.keyword_rules)


def _resolve_category_map(pack_map: Optional[Dict[str, int]], version: str) -> Dict[str, int]:
    """
    Reconcile the pack's categoryMap with the taxonomy.

    Entries that name an unknown category or disagree with the taxonomy id
    are dropped so a stale pack can never write an id the finalizer doesn't
    recognize.
    """
    if pack_map is None:
        return dict(CATEGORY_MAP)

    resolved = {}
    for name, cat_id in pack_map.items():
        expected = CATEGORY_MAP.get(name)
        if expected is None or expected != cat_id:
            logger.warning("rules_category_map_mismatch",
                           version=version,
                           category=name,
                           pack_id=cat_id,
                           taxonomy_id=expected)
            continue
        resolved[name] = cat_id
    return resolved


def _compile_rule(
    raw: Dict[str, Any],
    source: str,
    category_map: Dict[str, int],
    version: str,
) -> Optional[CompiledRule]:
    """Validate and compile one rule; None if the rule is unusable."""
    try:
        rule = RuleConfig.model_validate(raw)
    except ValidationError as e:
        logger.warning("rule_invalid",
                       version=version,
                       source=source,
                       rule=raw,
                       error=str(e))
        return None

    try:
        if source == "vendor":
            regex = re.compile(rule.pattern, re.IGNORECASE)
        else:
            regex = re.compile(rf"\b({rule.pattern})\b", re.IGNORECASE)
    except re.error as e:
        logger.warning("rule_regex_error",
                       version=version,
                       source=source,
                       pattern=rule.pattern,
                       error=str(e))
        return None

    category_id = category_map.get(rule.category)
    if category_id is None:
        # Kept so pack stats stay honest, but it can never produce a hit
        logger.warning("rule_unknown_category",
                       version=version,
                       source=source,
                       pattern=rule.pattern,
                       category=rule.category)

    default_confidence = DEFAULT_VENDOR_CONFIDENCE if source == "vendor" else DEFAULT_KEYWORD_CONFIDENCE
    return CompiledRule(
        source=source,
        pattern=rule.pattern,
        regex=regex,
        category=rule.category,
        category_id=category_id,
        confidence=rule.confidence if rule.confidence is not None else default_confidence,
    )


def compile_rules_pack(config: RulesPackConfig) -> CompiledRulesPack:
    """Compile a validated pack config into matchers."""
    category_map = _resolve_category_map(config.category_map, config.version)

    vendor_rules = []
    keyword_rules = []
    skipped = 0

    for raw in config.vendors:
        compiled = _compile_rule(raw, "vendor", category_map, config.version)
        if compiled is None:
            skipped += 1
        else:
            vendor_rules.append(compiled)

    for raw in config.keywords:
        compiled = _compile_rule(raw, "keyword", category_map, config.version)
        if compiled is None:
            skipped += 1
        else:
            keyword_rules.append(compiled)

    pack = CompiledRulesPack(
        version=config.version,
        vendor_rules=vendor_rules,
        keyword_rules=keyword_rules,
        category_map=category_map,
        skipped_rules=skipped,
    )

    logger.info("rules_pack_compiled",
                version=pack.version,
                vendor_rules=len(vendor_rules),
                keyword_rules=len(keyword_rules),
                skipped=skipped)

    return pack


@lru_cache(maxsize=16)
def parse_rules_pack(raw_json: str) -> CompiledRulesPack:
    """
    Parse and compile a rules pack from JSON text.

    Cached on the exact text, so an edited pack (new version) is recompiled
    and an unchanged one is reused across requests.

    Raises:
        RulesPackError: JSON is unreadable or not a rules pack object
    """
    try:
        data = json.loads(raw_json)
    except json.JSONDecodeError as e:
        raise RulesPackError(f"Rules pack is not valid JSON: {e}") from e

    if not isinstance(data, dict):
        raise RulesPackError("Rules pack must be a JSON object")

    try:
        config = RulesPackConfig.model_validate(data)
    except ValidationError as e:
        raise RulesPackError(f"Rules pack has invalid structure: {e}") from e

    return compile_rules_pack(config)


def load_default_rules_pack() -> CompiledRulesPack:
    """Rules pack shipped with the package"""
    return parse_rules_pack(DEFAULT_RULES_PATH.read_text(encoding="utf-8"))


def load_rules_pack(settings: Optional[Settings] = None) -> CompiledRulesPack:
    """
    Load the active rules pack.

    Precedence: RULES_JSON → RULES_FILE → shipped default pack. A pack that
    cannot be read falls back to the default pack so categorization keeps
    working with a bad deployment.
    """
    settings = settings or get_settings()

    try:
        if settings.rules_json:
            return parse_rules_pack(settings.rules_json)
        if settings.rules_file:
            return parse_rules_pack(Path(settings.rules_file).read_text(encoding="utf-8"))
    except (RulesPackError, OSError) as e:
        logger.error("rules_pack_load_failed",
                     rules_file=settings.rules_file,
                     from_env=bool(settings.rules_json),
                     error=str(e),
                     message="Falling back to default rules pack")

    return load_default_rules_pack()


def _item_description(item: Union[LineItem, Dict[str, Any]]) -> str:
    if isinstance(item, dict):
        return item.get("description") or ""
    return item.description or ""


class RulesEngine:
    """
    Evaluates a compiled rules pack against one receipt.

    Usage:
        pack = load_rules_pack()
        hit = rules_engine.evaluate(pack, "STARBUCKS STORE #4521", [])
        if hit:
            print(hit.category, hit.confidence)
    """

    def evaluate(
        self,
        pack: CompiledRulesPack,
        vendor_text: Optional[str],
        line_items: Optional[Iterable[Union[LineItem, Dict[str, Any]]]] = None,
    ) -> Optional[RuleHit]:
        """
        Find the best matching rule.

        Args:
            pack: Compiled rules pack
            vendor_text: Raw vendor text from OCR
            line_items: Extracted line items (only descriptions are used)

        Returns:
            Highest-confidence RuleHit, or None if nothing matched
        """
        vnorm = normalize_text(vendor_text)

        item_text = " ".join(
            d for d in (_item_description(i) for i in (line_items or [])) if d
        )
        bag = f"{vnorm} {normalize_text(item_text)}".strip()

        best: Optional[RuleHit] = None

        for rule in pack.vendor_rules:
            best = self._consider(pack, rule, vnorm, best)

        for rule in pack.keyword_rules:
            best = self._consider(pack, rule, bag, best)

        return best

    def _consider(
        self,
        pack: CompiledRulesPack,
        rule: CompiledRule,
        text: str,
        best: Optional[RuleHit],
    ) -> Optional[RuleHit]:
        """Return the new best hit after testing one rule."""
        if rule.category_id is None or not text:
            return best

        try:
            matched = rule.regex.search(text) is not None
        except Exception as e:
            logger.warning("rule_match_error",
                           version=pack.version,
                           source=rule.source,
                           pattern=rule.pattern,
                           error=str(e))
            return best

        if not matched:
            return best

        # Strictly greater: first-seen wins ties
        if best is not None and rule.confidence <= best.confidence:
            return best

        return RuleHit(
            category_id=rule.category_id,
            category=rule.category,
            confidence=rule.confidence,
            details={"source": rule.source, "pattern": rule.pattern},
        )


# Singleton instance
rules_engine = RulesEngine()
