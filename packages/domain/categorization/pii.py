"""
PII scrubbing for text that leaves the system in an LLM prompt

Vendor text from OCR frequently carries the store's phone number, address or
a loyalty email. These are replaced with fixed placeholder tokens before any
prompt is built.
"""
import re

# Order matters: emails first (may contain digit runs), then state+zip before
# bare zips so "NY 10001" becomes [ADDRESS] rather than "NY [ZIP]".
_EMAIL_RE = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_RE = re.compile(r"(?<!\d)(?:\+?1[\s.-]?)?\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}(?!\d)")
_STATE_ZIP_RE = re.compile(r"\b[A-Z]{2}\s\d{5}(?:-\d{4})?\b")
_ZIP_RE = re.compile(r"\b\d{5}(?:-\d{4})?\b")

PHONE_TOKEN = "[PHONE]"
ZIP_TOKEN = "[ZIP]"
ADDRESS_TOKEN = "[ADDRESS]"
EMAIL_TOKEN = "[EMAIL]"


def strip_pii(text: str) -> str:
    """
    Replace phone numbers, state+ZIP pairs, ZIP codes and emails with tokens.

    Args:
        text: Free text (vendor line, OCR snippet, item description)

    Returns:
        Text safe to include in an outbound prompt
    """
    if not text:
        return text

    stripped = _EMAIL_RE.sub(EMAIL_TOKEN, text)
    stripped = _PHONE_RE.sub(PHONE_TOKEN, stripped)
    stripped = _STATE_ZIP_RE.sub(ADDRESS_TOKEN, stripped)
    stripped = _ZIP_RE.sub(ZIP_TOKEN, stripped)
    return stripped
