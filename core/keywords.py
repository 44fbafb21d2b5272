"""
Keyword fallback classifier — last strategy of the resolution chain.

Pure functions: score each keyword group against the problem text
(sum of len(keyword) * 2 over matched keywords), take the best group at or
above the acceptance threshold, then locate the first catalog entry whose
label contains that group's pattern.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Sequence

from models.schemas import ResolutionCatalogEntry
from utils.text import normalize

MIN_KEYWORD_SCORE = 8


@dataclass(frozen=True)
class KeywordGroup:
    name: str
    pattern: str                 # fragment searched for in catalog labels
    keywords: tuple[str, ...]


KEYWORD_GROUPS: tuple[KeywordGroup, ...] = (
    KeywordGroup("power", "power", (
        "power", "electricity", "no power", "dead", "off", "turned off", "shut down",
        "חשמל", "כבוי", "כבה", "אין חשמל", "מת",
    )),
    KeywordGroup("gate", "gate", (
        "gate", "barrier", "arm", "boom", "not opening", "stuck open", "stuck closed",
        "מחסום", "זרוע", "שער", "לא נפתח", "לא נסגר", "תקוע",
    )),
    KeywordGroup("printer", "printer", (
        "printer", "print", "ticket not coming", "paper", "jam",
        "מדפסת", "הדפסה", "נייר", "כרטיס לא יוצא", "תקוע נייר",
    )),
    KeywordGroup("payment", "payment", (
        "payment", "credit", "card", "cash", "coins", "bills", "pay",
        "תשלום", "אשראי", "כרטיס אשראי", "מזומן", "מטבעות", "שטרות",
    )),
    KeywordGroup("display", "display", (
        "display", "screen", "blank", "black screen", "frozen",
        "מסך", "תצוגה", "מסך שחור", "קפוא",
    )),
    KeywordGroup("connectivity", "communication", (
        "communication", "network", "offline", "connection", "internet", "server",
        "תקשורת", "רשת", "אינטרנט", "חיבור", "שרת", "מנותק",
    )),
    KeywordGroup("receipts", "receipt", (
        "receipt", "invoice", "voucher",
        "קבלה", "חשבונית", "שובר",
    )),
)


def score_group(text: str, group: KeywordGroup) -> int:
    """Substring scoring, so Hebrew prefixes (ה/ב/ל/ו) and plurals still hit."""
    norm = normalize(text)
    if not norm:
        return 0
    score = 0
    for kw in group.keywords:
        kw_norm = normalize(kw)
        if kw_norm and kw_norm in norm:
            score += len(kw_norm) * 2
    return score


def best_group(
    text: str,
    groups: Sequence[KeywordGroup] = KEYWORD_GROUPS,
    min_score: int = MIN_KEYWORD_SCORE,
) -> Optional[tuple[KeywordGroup, int]]:
    """Highest-scoring group at or above the threshold; ties keep group order."""
    best: Optional[KeywordGroup] = None
    best_score = 0
    for group in groups:
        score = score_group(text, group)
        if score > best_score:
            best, best_score = group, score
    if best is None or best_score < min_score:
        return None
    return best, best_score


def find_catalog_entry(
    pattern: str,
    catalog: Sequence[ResolutionCatalogEntry],
) -> Optional[ResolutionCatalogEntry]:
    needle = pattern.lower()
    return next((e for e in catalog if needle in e.label.lower()), None)


def classify(
    text: str,
    catalog: Sequence[ResolutionCatalogEntry],
    min_score: int = MIN_KEYWORD_SCORE,
) -> Optional[ResolutionCatalogEntry]:
    hit = best_group(text, min_score=min_score)
    if hit is None:
        return None
    return find_catalog_entry(hit[0].pattern, catalog)
