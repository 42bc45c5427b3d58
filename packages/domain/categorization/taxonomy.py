"""
Category Taxonomy - Schedule C expense categories

Single source of truth for category names and ids. The rules engine's default
categoryMap, the LLM allow-list and the receipt finalizer all read from here.

Ids are stable: they are persisted in receipts.category_id and
predictions.category_id, so never renumber an existing entry.
"""
from typing import Dict, List, Optional, Tuple

# name → id (Schedule C line items)
CATEGORY_MAP: Dict[str, int] = {
    "Advertising": 1,
    "Car and Truck Expenses": 2,
    "Commissions and Fees": 3,
    "Contract Labor": 4,
    "Depletion": 5,
    "Depreciation": 6,
    "Employee Benefit Programs": 7,
    "Insurance (other than health)": 8,
    "Interest - Mortgage": 9,
    "Interest - Other": 10,
    "Legal and Professional Services": 11,
    "Office Expense": 12,
    "Pension and Profit-Sharing Plans": 13,
    "Rent or Lease - Vehicles and Equipment": 14,
    "Rent or Lease - Other Business Property": 15,
    "Repairs and Maintenance": 16,
    "Supplies": 17,
    "Taxes and Licenses": 18,
    "Travel": 19,
    "Meals": 20,
    "Utilities": 21,
    "Wages": 22,
    "Other Expenses": 23,
}

# id → name
CATEGORY_NAMES: Dict[int, str] = {cat_id: name for name, cat_id in CATEGORY_MAP.items()}

# Short hints shown to the LLM to separate commonly confused categories
CATEGORY_GUIDANCE: Dict[str, str] = {
    "Meals": "restaurants, cafes, bars, food service, dining establishments",
    "Supplies": "retail stores, supermarkets, hardware stores, office supplies, merchandise",
    "Travel": "flights, hotels, transportation, lodging",
    "Utilities": "telecom, ISP, power, phone services",
    "Office Expense": "software, SaaS, shipping, office services",
    "Repairs and Maintenance": "repairs, auto service, maintenance",
    "Car and Truck Expenses": "gas, fuel, vehicle maintenance",
    "Other Expenses": "anything that doesn't fit above",
}


def get_category_id(name: str) -> Optional[int]:
    """Return the id for an exact category name, or None if unknown."""
    return CATEGORY_MAP.get(name)


def get_category_name(category_id: int) -> Optional[str]:
    """Return the category name for an id, or None if unknown."""
    return CATEGORY_NAMES.get(category_id)


def is_valid_category(name: Optional[str]) -> bool:
    return bool(name) and name in CATEGORY_MAP


def all_categories() -> List[Tuple[int, str]]:
    """All (id, name) pairs ordered by id."""
    return sorted(CATEGORY_NAMES.items())


def format_allow_list() -> str:
    """Render the allow-list as prompt lines: '- Name: id'."""
    return "\n".join(f"- {name}: {cat_id}" for cat_id, name in all_categories())


def format_guidance() -> str:
    return "\n".join(f"- {name}: {hint}" for name, hint in CATEGORY_GUIDANCE.items())
