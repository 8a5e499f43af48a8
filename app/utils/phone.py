"""
Phone number normalization for French lead files.

CRM exports mix national (``06 12 34 56 78``), international
(``+33 6 12 34 56 78``, ``0033612345678``) and prefixed (``p:+33...``) forms.
Everything is reduced to digits with an optional leading ``+`` and French
numbers are rewritten to ``+33`` form.
"""
import re
from typing import Any, Optional

FRANCE_COUNTRY_CODE = "33"

# Lead-ads exports prefix numbers with "p:" (phone) or "t:" (tel).
_CRM_PREFIX = re.compile(r"^\s*[pt]\s*:\s*", re.IGNORECASE)


def normalize_phone(value: Any) -> Optional[str]:
    """
    Normalize a phone number.

    - Strips CRM prefixes, whitespace and punctuation
    - ``00`` international prefix becomes ``+``
    - ``0XXXXXXXXX`` (10 digits) becomes ``+33XXXXXXXXX``
    - ``33XXXXXXXXX`` (11 digits) becomes ``+33XXXXXXXXX``

    Returns:
        The normalized number, or None when no digits remain
    """
    if value is None:
        return None

    text = _CRM_PREFIX.sub("", str(value)).strip()
    if not text:
        return None

    has_plus = text.startswith("+")
    digits = re.sub(r"\D", "", text)
    if not digits:
        return None

    if has_plus:
        return f"+{digits}"

    if digits.startswith("00") and len(digits) > 4:
        return f"+{digits[2:]}"

    if len(digits) == 10 and digits.startswith("0"):
        return f"+{FRANCE_COUNTRY_CODE}{digits[1:]}"

    if len(digits) == 11 and digits.startswith(FRANCE_COUNTRY_CODE):
        return f"+{digits}"

    return digits
