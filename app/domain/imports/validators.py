"""
Row normalization and validation for lead imports.

Everything here is pure: a raw row plus the column mapping goes in, a
normalized field map and a per-field error set come out. No database or
network access, so rows can be processed in any number of workers.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from app.api.schemas.shared import CONTACT_FIELDS, ColumnMapping
from app.domain.imports.parsers import RawRow
from app.utils.phone import normalize_phone

MAX_EMAIL_LENGTH = 255
MAX_PHONE_LENGTH = 50

PRESET_PATTERNS = {
    "email": r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$",
    "postal_code_fr": r"^\d{5}$",
    "postal_code": r"^\d{4,10}$",
}

ERROR_MESSAGES = {
    "email_format": "Invalid email format",
    "email_length": f"Email must be at most {MAX_EMAIL_LENGTH} characters",
    "phone_length": f"Phone number must be at most {MAX_PHONE_LENGTH} characters",
    "postal_code_format": "Postal code must be 5 digits (France) or 4 to 10 digits",
    "contact": "No contact field: an email, a phone number or an external id is required",
}

# Domain typos seen in hand-typed lead files, keyed by the domain without dots.
EMAIL_DOMAIN_TYPOS = {
    "gmailcom": "gmail.com",
    "gmailfr": "gmail.fr",
    "gmalcom": "gmail.com",
    "gmailc": "gmail.com",
    "gmaillcom": "gmail.com",
    "yahoofr": "yahoo.fr",
    "yahoocom": "yahoo.com",
    "hotmailcom": "hotmail.com",
    "hotmailfr": "hotmail.fr",
    "hotmialcom": "hotmail.com",
    "outlookcom": "outlook.com",
    "outlookfr": "outlook.fr",
    "orangefr": "orange.fr",
    "freefr": "free.fr",
    "sfrfr": "sfr.fr",
    "wanadoofr": "wanadoo.fr",
    "lapostenet": "laposte.net",
    "icloudcom": "icloud.com",
}

_MISSING_DOT_TLDS = ("com", "net", "org", "fr", "be", "de", "eu", "io")

_compiled_patterns = {name: re.compile(pattern) for name, pattern in PRESET_PATTERNS.items()}


def validate_with_preset(value: Optional[str], preset_name: str) -> Tuple[bool, Optional[str]]:
    """
    Validate a value against a preset pattern.

    Empty values are considered valid; presence is checked separately.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if value is None or value == "":
        return True, None
    pattern = _compiled_patterns.get(preset_name)
    if pattern is None:
        return False, f"Unknown preset: {preset_name}"
    if pattern.match(value):
        return True, None
    return False, f"Value does not match {preset_name} format"


def normalize_text(value: Any) -> Optional[str]:
    """Trim and collapse internal whitespace; empty becomes None."""
    if value is None:
        return None
    text = re.sub(r"\s+", " ", str(value)).strip()
    return text or None


def _fix_email_domain(domain: str) -> str:
    compact = domain.replace(".", "")
    if compact in EMAIL_DOMAIN_TYPOS:
        return EMAIL_DOMAIN_TYPOS[compact]
    if "." not in domain:
        for tld in _MISSING_DOT_TLDS:
            # Require at least two characters before the TLD.
            if domain.endswith(tld) and len(domain) - len(tld) >= 2:
                return f"{domain[:-len(tld)]}.{tld}"
    return domain


def normalize_email(value: Any) -> Optional[str]:
    """Lower-case, trim and repair common domain typos (``gmailcom`` -> ``gmail.com``)."""
    text = normalize_text(value)
    if not text:
        return None
    email = text.replace(" ", "").lower()
    if email.count("@") != 1:
        return email
    local, domain = email.split("@")
    if not domain:
        return email
    return f"{local}@{_fix_email_domain(domain)}"


def normalize_postal_code(value: Any) -> Optional[str]:
    text = normalize_text(value)
    if not text:
        return None
    return re.sub(r"\s+", "", text)


FIELD_NORMALIZERS: Dict[str, Callable[[Any], Optional[str]]] = {
    "email": normalize_email,
    "phone": normalize_phone,
    "postal_code": normalize_postal_code,
}


def validate_email(email: Optional[str]) -> Optional[str]:
    if not email:
        return None
    if len(email) > MAX_EMAIL_LENGTH:
        return ERROR_MESSAGES["email_length"]
    valid, _ = validate_with_preset(email, "email")
    return None if valid else ERROR_MESSAGES["email_format"]


def validate_phone(phone: Optional[str]) -> Optional[str]:
    if phone and len(phone) > MAX_PHONE_LENGTH:
        return ERROR_MESSAGES["phone_length"]
    return None


def validate_postal_code(postal_code: Optional[str]) -> Optional[str]:
    if not postal_code:
        return None
    for preset in ("postal_code_fr", "postal_code"):
        valid, _ = validate_with_preset(postal_code, preset)
        if valid:
            return None
    return ERROR_MESSAGES["postal_code_format"]


@dataclass
class RowResult:
    row_number: int
    raw_data: Dict[str, str]
    normalized_data: Dict[str, Optional[str]]
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def is_valid(self) -> bool:
        return not self.errors


def build_raw_data(headers: Sequence[str], values: Sequence[Any]) -> Dict[str, str]:
    """
    Key raw cell values by header name.

    Blank or repeated headers get positional names so no value is lost.
    """
    raw: Dict[str, str] = {}
    width = max(len(headers), len(values))
    for index in range(width):
        header = headers[index] if index < len(headers) else ""
        key = header or f"column_{index + 1}"
        if key in raw:
            key = f"{key}_{index + 1}"
        value = values[index] if index < len(values) else ""
        raw[key] = "" if value is None else str(value)
    return raw


def normalize_row(values: Sequence[Any], mappings: Sequence[ColumnMapping]) -> Dict[str, Optional[str]]:
    """Apply the column mapping and per-field normalizers."""
    normalized: Dict[str, Optional[str]] = {}
    for mapping in mappings:
        if not mapping.target_field:
            continue
        raw_value = values[mapping.source_index] if mapping.source_index < len(values) else None
        normalizer = FIELD_NORMALIZERS.get(mapping.target_field, normalize_text)
        normalized[mapping.target_field] = normalizer(raw_value)
    return normalized


def validate_normalized(normalized: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Return field -> message for every rule the row breaks."""
    errors: Dict[str, str] = {}

    email_error = validate_email(normalized.get("email"))
    if email_error:
        errors["email"] = email_error

    phone_error = validate_phone(normalized.get("phone"))
    if phone_error:
        errors["phone"] = phone_error

    postal_error = validate_postal_code(normalized.get("postal_code"))
    if postal_error:
        errors["postal_code"] = postal_error

    if not any(normalized.get(field) for field in CONTACT_FIELDS):
        errors["contact"] = ERROR_MESSAGES["contact"]

    return errors


def process_row(raw_row: RawRow, headers: Sequence[str], mappings: Sequence[ColumnMapping]) -> RowResult:
    normalized = normalize_row(raw_row.values, mappings)
    return RowResult(
        row_number=raw_row.row_number,
        raw_data=build_raw_data(headers, raw_row.values),
        normalized_data=normalized,
        errors=validate_normalized(normalized),
    )


def process_rows(
    raw_rows: Sequence[RawRow],
    headers: Sequence[str],
    mappings: Sequence[ColumnMapping],
) -> List[RowResult]:
    return [process_row(row, headers, mappings) for row in raw_rows]
