"""
Column auto-mapping for lead imports.

Each file header is normalized (case-folded, accents and punctuation
stripped) and compared with a French/English alias table: an exact alias hit
scores 1.0, otherwise the best fuzzy similarity is used when it clears the
confidence threshold. A lead field is claimed by at most one column.
"""
from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Dict, List, Optional, Sequence, Tuple

from app.api.schemas.shared import (
    CONTACT_FIELDS,
    LEAD_FIELDS,
    ColumnMapping,
    MappingAlternative,
    MappingSummary,
    RequiredMappingCheck,
)
from app.core.config import settings

logger = logging.getLogger(__name__)

MAX_SAMPLE_VALUES = 5
MAX_ALTERNATIVES = 3
ALTERNATIVE_MIN_CONFIDENCE = 0.6
HIGH_CONFIDENCE = 0.9
CONTAINMENT_SCORE = 0.9

RECOMMENDED_FIELDS = ("first_name", "last_name")

COLUMN_ALIASES: Dict[str, List[str]] = {
    "external_id": [
        "id", "external_id", "id_externe", "identifiant", "reference", "ref",
        "numero", "code_client", "lead_id", "customer_id", "client_id",
    ],
    "first_name": [
        "prénom", "prenom", "firstname", "first name", "given name",
    ],
    "last_name": [
        "nom", "nom de famille", "lastname", "last name", "family name",
        "surname", "full name", "fullname", "name",
    ],
    "email": [
        "email", "e-mail", "mail", "courriel", "adresse email", "adresse mail",
        "adresse e-mail", "email address", "email principal", "main email",
    ],
    "phone": [
        "téléphone", "telephone", "tel", "tél", "phone", "mobile", "portable",
        "gsm", "numéro de téléphone", "numero tel", "phone number", "tel mobile",
        "tel fixe", "téléphone principal", "main phone", "cell", "cellphone",
    ],
    "company": [
        "entreprise", "société", "societe", "company", "raison sociale",
        "nom entreprise", "organization", "organisation", "business", "firm",
    ],
    "job_title": [
        "fonction", "poste", "titre", "job title", "job", "role", "position",
        "intitulé poste", "profession", "occupation",
    ],
    "address": [
        "adresse", "address", "rue", "street", "voie", "adresse postale",
        "street address", "full address",
    ],
    "city": [
        "ville", "city", "commune", "localité", "town", "municipality",
    ],
    "postal_code": [
        "code postal", "cp", "postal code", "postalcode", "zip", "zipcode",
        "zip code", "postcode",
    ],
    "country": [
        "pays", "country", "nation",
    ],
    "status": [
        "statut", "status", "état", "etat", "state", "lead status",
        "contact status",
    ],
    "source": [
        "source", "origine", "provenance", "canal", "channel", "campagne",
        "campaign", "utm source", "campaign name", "form name", "platform",
    ],
    "notes": [
        "notes", "note", "commentaire", "commentaires", "comment", "comments",
        "remarque", "remarques", "observations", "description",
    ],
    "assigned_to": [
        "commercial", "assigné à", "assigne a", "assigned to", "assignee",
        "owner", "responsable", "vendeur", "sales rep", "conseiller",
    ],
}


def normalize_header(header: str) -> str:
    """
    Normalize a header for alias comparison.

    Examples:
        "Prénom" -> "prenom"
        "Adresse E-mail" -> "adresse_e_mail"
        " Code  Postal " -> "code_postal"
    """
    if not header:
        return ""
    value = unicodedata.normalize("NFKD", header)
    value = "".join(ch for ch in value if not unicodedata.combining(ch))
    value = value.lower().strip()
    value = re.sub(r"[\s\-'.]+", "_", value)
    value = re.sub(r"[^a-z0-9_]", "", value)
    return re.sub(r"_+", "_", value).strip("_")


_NORMALIZED_ALIASES: Dict[str, List[str]] = {
    field: sorted({normalize_header(alias) for alias in aliases})
    for field, aliases in COLUMN_ALIASES.items()
}


def calculate_similarity(str1: str, str2: str) -> float:
    """
    Similarity of two normalized headers (0.0 to 1.0).

    Whole-token containment ("email_pro" vs "email") scores 0.9; anything
    else falls back to SequenceMatcher's ratio.
    """
    if not str1 or not str2:
        return 0.0
    if str1 == str2:
        return 1.0
    shorter, longer = sorted((str1, str2), key=len)
    if len(shorter) >= 3 and f"_{shorter}_" in f"_{longer}_":
        return CONTAINMENT_SCORE
    return SequenceMatcher(None, str1, str2).ratio()


@dataclass
class FieldMatch:
    field: str
    confidence: float
    match_type: str  # "exact" or "fuzzy"


def score_fields(header: str) -> List[FieldMatch]:
    """Best score per lead field for one header, highest first."""
    normalized = normalize_header(header)
    if not normalized:
        return []

    matches: List[FieldMatch] = []
    for field, aliases in _NORMALIZED_ALIASES.items():
        if normalized in aliases:
            matches.append(FieldMatch(field, 1.0, "exact"))
            continue
        best = max(calculate_similarity(normalized, alias) for alias in aliases)
        if best > 0:
            matches.append(FieldMatch(field, round(best, 4), "fuzzy"))

    # Stable on LEAD_FIELDS order for equal scores.
    matches.sort(key=lambda m: (-m.confidence, LEAD_FIELDS.index(m.field)))
    return matches


def find_best_match(header: str) -> Optional[FieldMatch]:
    matches = score_fields(header)
    return matches[0] if matches else None


def auto_map_column(
    header: str,
    threshold: Optional[float] = None,
) -> Tuple[Optional[str], float, List[MappingAlternative]]:
    """
    Map a single header in isolation.

    Returns:
        (target field or None, confidence, alternatives)
    """
    threshold = settings.auto_map_confidence_threshold if threshold is None else threshold
    matches = score_fields(header)
    if not matches or matches[0].confidence < threshold:
        return None, 0.0, _alternatives(matches, exclude=None)
    best = matches[0]
    return best.field, best.confidence, _alternatives(matches, exclude=best.field)


def _alternatives(matches: Sequence[FieldMatch], exclude: Optional[str]) -> List[MappingAlternative]:
    return [
        MappingAlternative(field=m.field, confidence=m.confidence)
        for m in matches
        if m.field != exclude and m.confidence >= ALTERNATIVE_MIN_CONFIDENCE
    ][:MAX_ALTERNATIVES]


def _sample_values(sample_rows: Sequence[Sequence[str]], index: int) -> List[str]:
    values: List[str] = []
    for row in sample_rows:
        if index >= len(row):
            continue
        value = (row[index] or "").strip()
        if value:
            values.append(value)
        if len(values) >= MAX_SAMPLE_VALUES:
            break
    return values


def auto_map_columns(
    headers: Sequence[str],
    sample_rows: Optional[Sequence[Sequence[str]]] = None,
    threshold: Optional[float] = None,
) -> List[ColumnMapping]:
    """
    Build one mapping per header, in source order.

    Columns are resolved highest-confidence first so the strongest candidate
    claims a field; a column whose best field is already claimed stays
    unmapped (the claimed field is listed among its alternatives).
    """
    threshold = settings.auto_map_confidence_threshold if threshold is None else threshold
    sample_rows = sample_rows or []

    scored = [score_fields(header) for header in headers]
    order = sorted(
        range(len(headers)),
        key=lambda i: (-(scored[i][0].confidence if scored[i] else 0.0), i),
    )

    claimed: Dict[str, int] = {}
    chosen: Dict[int, FieldMatch] = {}
    for index in order:
        matches = scored[index]
        if not matches or matches[0].confidence < threshold:
            continue
        best = matches[0]
        if best.field in claimed:
            logger.debug(
                "Column '%s' loses '%s' to column '%s'",
                headers[index],
                best.field,
                headers[claimed[best.field]],
            )
            continue
        claimed[best.field] = index
        chosen[index] = best

    mappings: List[ColumnMapping] = []
    for index, header in enumerate(headers):
        match = chosen.get(index)
        mappings.append(
            ColumnMapping(
                source_column=header,
                source_index=index,
                target_field=match.field if match else None,
                confidence=match.confidence if match else 0.0,
                is_manual=False,
                sample_values=_sample_values(sample_rows, index),
                alternatives=_alternatives(scored[index], exclude=match.field if match else None),
            )
        )

    logger.info(
        "Auto-mapped %s of %s columns: %s",
        len(chosen),
        len(headers),
        {m.source_column: m.target_field for m in mappings if m.target_field},
    )
    return mappings


def apply_manual_override(
    mappings: Sequence[ColumnMapping],
    source_index: int,
    target_field: Optional[str],
) -> List[ColumnMapping]:
    """Set (or clear) a column's target; any other column holding that field is released."""
    if target_field is not None and target_field not in LEAD_FIELDS:
        raise ValueError(f"Unknown lead field '{target_field}'")

    updated: List[ColumnMapping] = []
    for mapping in mappings:
        if mapping.source_index == source_index:
            updated.append(
                mapping.model_copy(
                    update={
                        "target_field": target_field,
                        "confidence": 1.0 if target_field else 0.0,
                        "is_manual": True,
                    }
                )
            )
        elif target_field and mapping.target_field == target_field:
            updated.append(
                mapping.model_copy(update={"target_field": None, "confidence": 0.0, "is_manual": False})
            )
        else:
            updated.append(mapping)
    return updated


def check_required_mappings(mappings: Sequence[ColumnMapping]) -> RequiredMappingCheck:
    mapped = {m.target_field for m in mappings if m.target_field}
    missing_contact = [field for field in CONTACT_FIELDS if field not in mapped]
    return RequiredMappingCheck(
        has_contact_field=len(missing_contact) < len(CONTACT_FIELDS),
        missing_contact_fields=missing_contact,
        missing_recommended_fields=[field for field in RECOMMENDED_FIELDS if field not in mapped],
    )


def get_mapping_summary(mappings: Sequence[ColumnMapping]) -> MappingSummary:
    mapped = [m for m in mappings if m.target_field]
    return MappingSummary(
        total_columns=len(mappings),
        mapped_columns=len(mapped),
        unmapped_columns=len(mappings) - len(mapped),
        high_confidence=sum(1 for m in mapped if m.confidence >= HIGH_CONFIDENCE),
        low_confidence=sum(1 for m in mapped if m.confidence < HIGH_CONFIDENCE and not m.is_manual),
        manual_overrides=sum(1 for m in mappings if m.is_manual),
    )
