"""
Duplicate detection for committed lead rows.

A row's duplicate key is its first non-empty configured field in priority
order external_id > email > phone, compared case-insensitively. Two indexes
are consulted: existing leads in the database and earlier rows of the same
file. When both are enabled and both match, the database match wins.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from app.api.schemas.shared import DUPLICATE_KEY_FIELDS, DuplicateConfig
from app.core.config import settings
from app.db.models import ImportRow, Lead

logger = logging.getLogger(__name__)

DuplicateKey = Tuple[str, str]


def dedupe_key(normalized: Dict[str, Optional[str]], check_fields: Sequence[str]) -> Optional[DuplicateKey]:
    """First non-empty configured key in priority order, lower-cased."""
    for field in DUPLICATE_KEY_FIELDS:
        if field not in check_fields:
            continue
        value = (normalized or {}).get(field)
        if value is not None and str(value).strip():
            return field, str(value).strip().lower()
    return None


@dataclass
class DuplicateMatch:
    source: str  # "database" or "file"
    field: str
    value: str
    lead_id: Optional[str] = None
    row_number: Optional[int] = None


@dataclass
class FileOccurrence:
    row_number: int
    lead_id: Optional[str]


class FileDuplicateIndex:
    """Key -> first occurrence in row-number order."""

    def __init__(self):
        self._seen: Dict[DuplicateKey, FileOccurrence] = {}

    def __len__(self) -> int:
        return len(self._seen)

    def get(self, key: DuplicateKey) -> Optional[FileOccurrence]:
        return self._seen.get(key)

    def register(self, key: DuplicateKey, row_number: int, lead_id: Optional[str]) -> None:
        occurrence = self._seen.get(key)
        if occurrence is None:
            self._seen[key] = FileOccurrence(row_number=row_number, lead_id=lead_id)
        elif occurrence.lead_id is None and lead_id is not None:
            occurrence.lead_id = lead_id


def find_existing_lead_ids(
    session: Session,
    keys: Iterable[DuplicateKey],
    *,
    exclude_job_id: Optional[str] = None,
    lookup_batch_size: Optional[int] = None,
) -> Dict[DuplicateKey, str]:
    """
    Resolve duplicate keys against live leads.

    Soft-deleted leads and leads created by ``exclude_job_id`` are ignored;
    the latter are tracked by the file index instead. When several leads
    share a key the oldest one is returned.
    """
    lookup_batch_size = lookup_batch_size or settings.dedupe_lookup_batch_size

    values_by_field: Dict[str, List[str]] = {}
    for field, value in set(keys):
        values_by_field.setdefault(field, []).append(value)

    found: Dict[DuplicateKey, str] = {}
    for field, values in values_by_field.items():
        column = getattr(Lead, field)
        for start in range(0, len(values), lookup_batch_size):
            chunk = values[start:start + lookup_batch_size]
            query = (
                select(Lead.id, func.lower(column))
                .where(func.lower(column).in_(chunk), Lead.deleted_at.is_(None))
                .order_by(Lead.created_at, Lead.id)
            )
            if exclude_job_id:
                query = query.where(
                    or_(Lead.import_job_id.is_(None), Lead.import_job_id != exclude_job_id)
                )
            for lead_id, lowered in session.execute(query):
                found.setdefault((field, lowered), lead_id)
    return found


class DuplicateResolver:
    """
    Classifies a job's staged valid rows as new or duplicate-of.

    Rows must be fed in row-number order: ``load_batch`` before each batch,
    then ``resolve``/``register`` per row.
    """

    def __init__(self, config: DuplicateConfig, job_id: str):
        self.config = config
        self.job_id = job_id
        self.file_index = FileDuplicateIndex()
        self._database_matches: Dict[DuplicateKey, str] = {}

    @property
    def enabled(self) -> bool:
        return bool(self.config.check_fields) and (
            self.config.check_database or self.config.check_within_file
        )

    def key_for(self, normalized: Dict[str, Optional[str]]) -> Optional[DuplicateKey]:
        return dedupe_key(normalized, self.config.check_fields)

    def seed_from_committed(self, session: Session) -> int:
        """Rebuild the file index from rows an earlier invocation already committed."""
        if not (self.enabled and self.config.check_within_file):
            return 0
        rows = session.execute(
            select(ImportRow.row_number, ImportRow.normalized_data, ImportRow.lead_id)
            .where(
                ImportRow.import_job_id == self.job_id,
                ImportRow.status.in_(("imported", "skipped")),
            )
            .order_by(ImportRow.row_number)
        )
        for row_number, normalized, lead_id in rows:
            key = self.key_for(normalized or {})
            if key:
                self.file_index.register(key, row_number, lead_id)
        if len(self.file_index):
            logger.info("Seeded %s duplicate keys for job %s", len(self.file_index), self.job_id)
        return len(self.file_index)

    def load_batch(self, session: Session, batch: Sequence[Dict[str, Optional[str]]]) -> None:
        """Prefetch database matches for a batch of normalized rows."""
        self._database_matches = {}
        if not (self.enabled and self.config.check_database):
            return
        keys = [key for key in (self.key_for(n) for n in batch) if key]
        if keys:
            self._database_matches = find_existing_lead_ids(session, keys, exclude_job_id=self.job_id)

    def resolve(self, normalized: Dict[str, Optional[str]]) -> Optional[DuplicateMatch]:
        if not self.enabled:
            return None
        key = self.key_for(normalized)
        if key is None:
            return None

        field, value = key
        if self.config.check_database and key in self._database_matches:
            return DuplicateMatch("database", field, value, lead_id=self._database_matches[key])

        if self.config.check_within_file:
            occurrence = self.file_index.get(key)
            if occurrence is not None:
                return DuplicateMatch(
                    "file", field, value, lead_id=occurrence.lead_id, row_number=occurrence.row_number
                )
        return None

    def register(self, normalized: Dict[str, Optional[str]], row_number: int, lead_id: Optional[str]) -> None:
        """Record a row as seen; only the first occurrence of a key is kept."""
        if not (self.enabled and self.config.check_within_file):
            return
        key = self.key_for(normalized)
        if key:
            self.file_index.register(key, row_number, lead_id)
