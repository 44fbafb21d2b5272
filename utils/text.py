"""
Text helpers shared by the identity resolver and the dialogue engine.

Keyword matching here is deliberately simple: lowercase substring and
whole-token checks. Anything smarter belongs in the resolution chain.
"""
from __future__ import annotations

import re
from typing import Iterable, Optional

_PUNCT = re.compile(r"[^\w\s]", re.UNICODE)
_SPACES = re.compile(r"\s+")
_NON_DIGITS = re.compile(r"\D")

# Unit number attempts, most explicit first.
UNIT_PATTERNS: list[re.Pattern] = [
    re.compile(r"(?:unit|station|lane|יחידה|עמדה|עמדת)\s*(?:no\.?|number|num|#|מס['׳\"]?|מספר)?\s*(\d{3})", re.IGNORECASE),
    re.compile(r"#\s*(\d{3})\b"),
    re.compile(r"(?<!\d)([1-6]\d{2})(?!\d)"),
]

UNIT_FAMILIES = {
    "1": "entry station",
    "2": "exit station",
    "3": "pass lane",
    "6": "automatic pay station",
}

URGENT_KEYWORDS = (
    "urgent", "asap", "blocked", "stuck", "emergency", "not working",
    "דחוף", "חסום", "תקוע", "לא עובד", "תקלה",
)


def normalize(text: str) -> str:
    """Lowercase, drop punctuation (emoji included), collapse whitespace."""
    if not text:
        return ""
    cleaned = _PUNCT.sub(" ", text.lower())
    return _SPACES.sub(" ", cleaned).strip()


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def tokens(text: str) -> list[str]:
    return normalize(text).split()


def contains_any(text: str, keywords: Iterable[str]) -> bool:
    """Substring match of any keyword in the normalized text."""
    norm = normalize(text)
    if not norm:
        return False
    return any(normalize(kw) and normalize(kw) in norm for kw in keywords)


def has_token(text: str, words: Iterable[str]) -> bool:
    """Whole-token match; multi-word entries match as a phrase."""
    norm = normalize(text)
    if not norm:
        return False
    padded = f" {norm} "
    return any(f" {normalize(w)} " in padded for w in words if normalize(w))


def extract_unit_number(text: str) -> Optional[str]:
    """Return the first unit number found, trying patterns in order."""
    if not text:
        return None
    for pattern in UNIT_PATTERNS:
        match = pattern.search(text)
        if match:
            return match.group(1)
    return None


def describe_unit(unit: Optional[str]) -> str:
    if not unit:
        return ""
    family = UNIT_FAMILIES.get(unit[0])
    return f"{unit} ({family})" if family else unit


def is_urgent(text: str) -> bool:
    return contains_any(text, URGENT_KEYWORDS)


def truncate(text: str, limit: int = 80) -> str:
    text = text or ""
    return text if len(text) <= limit else text[: limit - 1] + "…"


_CONTROL = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def clean_message_text(text: str, max_length: int = 4000) -> str:
    """Drop control characters (newlines and tabs survive) and cap the length."""
    if not text:
        return ""
    return _CONTROL.sub("", text)[:max_length].strip()
