"""Post-generation check for monetary amounts in drafts.

Generated text is untrusted: any price it quotes must match a configured
pricing tier (or an amount the customer wrote themselves) before a human
sends it.
"""

import re
from typing import Iterable, List, Optional, Set

from leadsync.business import BusinessContext

_AMOUNT_RE = re.compile(
    r"(?P<symbol>[$€£])\s?(?P<num>(?:\d[\d,]*\d|\d)(?:\.\d{1,2})?)(?P<k>\s?[kK]\b)?"
    r"|(?P<num2>(?:\d[\d,]*\d|\d)(?:\.\d{1,2})?)(?P<k2>\s?[kK])?\s?(?P<code>USD|EUR|GBP|dollars|euros)\b",
    re.IGNORECASE,
)


def _to_number(num: str, thousands: bool) -> Optional[float]:
    try:
        value = float(num.replace(",", ""))
    except ValueError:
        return None
    return value * 1000 if thousands else value


def extract_amounts(text: Optional[str]) -> List[tuple]:
    """Return ``(matched_text, value)`` pairs for every currency amount in ``text``."""
    found = []
    for match in _AMOUNT_RE.finditer(text or ""):
        if match.group("num") is not None:
            value = _to_number(match.group("num"), bool(match.group("k")))
        else:
            value = _to_number(match.group("num2"), bool(match.group("k2")))
        if value is not None:
            found.append((match.group(0).strip(), value))
    return found


def _known_prices(business: Optional[BusinessContext]) -> Set[float]:
    if business is None:
        return set()
    return {round(tier.price_amount, 2) for tier in business.pricing_tiers if tier.price_amount is not None}


def find_unverified_amounts(
    text: str,
    business: Optional[BusinessContext],
    allowed_amounts: Iterable[float] = (),
) -> List[str]:
    """List amounts in ``text`` that match neither a pricing tier nor ``allowed_amounts``."""
    known = _known_prices(business) | {round(value, 2) for value in allowed_amounts}
    flagged: List[str] = []
    for raw, value in extract_amounts(text):
        if round(value, 2) not in known and raw not in flagged:
            flagged.append(raw)
    return flagged
