"""
Identity Resolver — maps a channel address or free text to a known customer.

Two independent paths:

  resolve_by_address(raw)     digits-only comparison over canonical dialing
                              variants (international / local trunk / bare)
  resolve_by_free_text(text)  fuzzy site-name scoring with confidence tiers

Scoring (kept exact for behavioral parity):
  - generic site-type words are removed from the text first (stoplist)
  - every remaining token longer than 2 chars that is a substring of the
    site name adds len(token) * 2
  - every configured alias pair matched adds a flat 20
  - best score >= 5 wins; >= 20 high, >= 10 medium, else low

Ties in either path resolve to the first customer in stored list order.
That is inherited behavior and a known correctness risk when two customers
share a number or a site-name fragment.
"""
from __future__ import annotations

import re
import structlog
from typing import Iterable, Optional, Sequence

from models.schemas import Confidence, Customer, IdentityMatch
from utils.text import digits_only, has_token, normalize

logger = structlog.get_logger()

MIN_TOKEN_LENGTH = 3
MIN_MATCH_SCORE = 5
MEDIUM_SCORE = 10
HIGH_SCORE = 20
ALIAS_BONUS = 20
TAIL_DIGITS = 9
MIN_TAIL_COMPARE = 8

# The whole (normalized) message must be the id, optionally introduced as one:
# "612", "customer 612", "my customer number is 612", "מספר לקוח 612".
_CUSTOMER_ID_MESSAGE = re.compile(
    r"^(?:(?:my )?(?:customer|client|account)(?: (?:number|no|id))?(?: is)? |id |"
    r"(?:מספר |מס )?לקוח(?: מספר)? )?(\d{3,})$"
)


# ──────────────────────────────────────────────────────────────
#  Pure helpers
# ──────────────────────────────────────────────────────────────

def normalize_digits(raw: str) -> str:
    """'+972 54-123-4567' -> '972541234567'. Also the session key form."""
    return digits_only(raw)


def phone_variants(raw: str, country_code: str = "972", trunk_prefix: str = "0") -> set[str]:
    """Canonical dialing forms of a number: as given, with/without country code and trunk digit."""
    digits = normalize_digits(raw)
    if not digits:
        return set()

    variants = {digits}
    if country_code and digits.startswith(country_code):
        rest = digits[len(country_code):]
        if trunk_prefix and rest.startswith(trunk_prefix):
            rest = rest[len(trunk_prefix):]
        variants |= {rest, trunk_prefix + rest}
    elif trunk_prefix and digits.startswith(trunk_prefix):
        rest = digits[len(trunk_prefix):]
        variants |= {rest, country_code + rest}
    else:
        variants |= {country_code + digits, trunk_prefix + digits}
    return {v for v in variants if v}


def phones_match(a: str, b: str, country_code: str = "972", trunk_prefix: str = "0") -> bool:
    da, db = digits_only(a), digits_only(b)
    if not da or not db:
        return False
    if phone_variants(da, country_code, trunk_prefix) & phone_variants(db, country_code, trunk_prefix):
        return True
    return (
        len(da) >= MIN_TAIL_COMPARE and len(db) >= MIN_TAIL_COMPARE
        and da[-TAIL_DIGITS:] == db[-TAIL_DIGITS:]
    )


def tokenize(text: str, stopwords: Iterable[str] = ()) -> list[str]:
    stop = {normalize(w) for w in stopwords}
    return [t for t in normalize(text).split() if len(t) >= MIN_TOKEN_LENGTH and t not in stop]


def score_site(
    text: str,
    site: str,
    stopwords: Iterable[str] = (),
    aliases: Sequence[Sequence[str]] = (),
) -> int:
    site_norm = normalize(site)
    if not site_norm:
        return 0
    score = sum(len(tok) * 2 for tok in tokenize(text, stopwords) if tok in site_norm)
    for pair in aliases:
        if len(pair) < 2:
            continue
        alias, fragment = pair[0], pair[1]
        if has_token(text, [alias]) and normalize(fragment) in site_norm:
            score += ALIAS_BONUS
    return score


def confidence_for(score: int) -> Optional[Confidence]:
    if score < MIN_MATCH_SCORE:
        return None
    if score >= HIGH_SCORE:
        return Confidence.HIGH
    if score >= MEDIUM_SCORE:
        return Confidence.MEDIUM
    return Confidence.LOW


# ──────────────────────────────────────────────────────────────
#  Resolver
# ──────────────────────────────────────────────────────────────

class IdentityResolver:
    """Read-only lookups over the customer directory."""

    def __init__(
        self,
        customers: Sequence[Customer],
        country_code: str = "972",
        trunk_prefix: str = "0",
        stopwords: Iterable[str] = (),
        aliases: Sequence[Sequence[str]] = (),
    ):
        self._customers = list(customers)
        self.country_code = country_code
        self.trunk_prefix = trunk_prefix
        self.stopwords = list(stopwords)
        self.aliases = [list(p) for p in aliases]

    @property
    def customers(self) -> list[Customer]:
        return list(self._customers)

    def get(self, customer_id: str) -> Optional[Customer]:
        return next((c for c in self._customers if c.id == customer_id), None)

    def search(self, query: str, limit: int = 10) -> list[Customer]:
        """Operator lookup: case-insensitive substring over name, site, phones, email and address."""
        needle = (query or "").strip().lower()
        if len(needle) < 2:
            return []
        hits = []
        for customer in self._customers:
            fields = [customer.name, customer.site, customer.email, customer.address, *customer.phones]
            if any(needle in (f or "").lower() for f in fields):
                hits.append(customer)
                if len(hits) >= limit:
                    break
        return hits

    def resolve_by_address(self, raw_address: str) -> Optional[Customer]:
        if not digits_only(raw_address):
            return None
        for customer in self._customers:
            if any(phones_match(raw_address, p, self.country_code, self.trunk_prefix)
                   for p in customer.phones):
                logger.info("identity_resolved_by_address",
                            customer_id=customer.id, site=customer.site)
                return customer
        return None

    def resolve_by_customer_id(self, text: str) -> Optional[Customer]:
        """Bind only a message that is the customer number itself.

        Numbers inside a longer sentence are usually unit numbers and are
        never read as customer ids.
        """
        match = _CUSTOMER_ID_MESSAGE.match(normalize(text))
        if not match:
            return None
        number = match.group(1)
        customer = next((c for c in self._customers if digits_only(c.id) == number), None)
        if customer:
            logger.info("identity_resolved_by_id", customer_id=customer.id)
        return customer

    def resolve_by_free_text(self, text: str) -> Optional[IdentityMatch]:
        best: Optional[Customer] = None
        best_score = 0
        for customer in self._customers:
            score = score_site(text, customer.site, self.stopwords, self.aliases)
            if score > best_score:
                best, best_score = customer, score

        confidence = confidence_for(best_score)
        if best is None or confidence is None:
            return None

        logger.info("identity_scored",
                    customer_id=best.id,
                    site=best.site,
                    score=best_score,
                    confidence=confidence.value)
        return IdentityMatch(customer=best, confidence=confidence, score=best_score)
