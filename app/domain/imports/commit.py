"""
Commit writer: moves staged valid rows into ``leads``.

Every batch runs in one transaction that creates or updates the leads,
writes one ``lead_history`` entry per touched lead, refines each staging row
to ``imported``/``skipped`` and refreshes the job counters. Only rows still
in status ``valid`` are picked up, so a re-run after a crash continues with
the first uncommitted row instead of inserting twice.
"""
from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.schemas.shared import LEAD_FIELDS, ImportOptions
from app.core.config import settings
from app.db.models import ImportJob, ImportRow, Lead, LeadHistory
from app.domain.imports.assignment import (
    AssignmentResolver,
    count_assigned_rows,
    load_user_directory,
)
from app.domain.imports.dedupe import DuplicateMatch, DuplicateResolver
from app.domain.imports.errors import CommitWriteError, ImportJobNotFoundError

logger = logging.getLogger(__name__)

HISTORY_EVENT_TYPE = "imported"

STATUS_LABELS = {
    "new": "Nouveau",
    "contacted": "Contacté",
    "qualified": "Qualifié",
    "proposal": "Proposition envoyée",
    "negotiation": "Négociation",
    "won": "Gagné",
    "lost": "Perdu",
    "no_answer_1": "Pas de réponse 1",
    "no_answer_2": "Pas de réponse 2",
    "wrong_number": "Faux numéro",
    "not_interested": "Pas intéressé",
    "callback": "Rappeler",
    "rdv": "RDV",
    "deposit": "Dépôt",
    "relance": "Relance",
    "mail": "Mail",
}

STATUS_ALIASES = {
    "nouveau": "new",
    "contacte": "contacted",
    "contacté": "contacted",
    "qualifie": "qualified",
    "qualifié": "qualified",
    "gagne": "won",
    "gagné": "won",
    "perdu": "lost",
    "rappeler": "callback",
    "not_interess": "not_interested",
    "not_interesse": "not_interested",
    "non_interesse": "not_interested",
    "non_intéressé": "not_interested",
    "pas_interesse": "not_interested",
    "pas_intéressé": "not_interested",
    "uninterested": "not_interested",
    "no_answer": "no_answer_1",
    "no_answer1": "no_answer_1",
    "not_answered": "no_answer_1",
    "pas_de_reponse": "no_answer_1",
    "pas_de_réponse": "no_answer_1",
}

# Lead columns an import may fill; assignment is handled separately.
_LEAD_DATA_FIELDS = tuple(f for f in LEAD_FIELDS if f not in ("status", "assigned_to"))


def normalize_lead_status(raw_status: Optional[str], fallback: str) -> str:
    """Map a free-text status onto a known status key, else ``fallback``."""
    if not raw_status or not str(raw_status).strip():
        return fallback
    key = re.sub(r"\s+", "_", str(raw_status).strip().lower()).replace("-", "_")
    key = STATUS_ALIASES.get(key, key)
    return key if key in STATUS_LABELS else fallback


def build_lead_data(
    normalized: Dict[str, Optional[str]],
    *,
    default_status: str,
    default_source: Optional[str],
    assigned_to: Optional[str],
    import_job_id: str,
) -> Dict[str, Any]:
    """Column values for a new lead."""
    data: Dict[str, Any] = {name: normalized.get(name) or None for name in _LEAD_DATA_FIELDS}
    status = normalize_lead_status(normalized.get("status"), default_status)
    data.update(
        {
            "country": data["country"] or settings.default_lead_country,
            "source": data["source"] or default_source,
            "status": status,
            "status_label": STATUS_LABELS.get(status, status),
            "assigned_to": assigned_to,
            "import_job_id": import_job_id,
        }
    )
    return data


def build_update_data(normalized: Dict[str, Optional[str]]) -> Dict[str, Any]:
    """
    Column values to overwrite on a matched lead.

    Only non-empty values are applied, and the assignee is never changed.
    An unrecognized status leaves the lead's status alone.
    """
    data: Dict[str, Any] = {
        name: normalized[name] for name in _LEAD_DATA_FIELDS if normalized.get(name)
    }
    if normalized.get("status"):
        status = normalize_lead_status(normalized["status"], "")
        if status:
            data["status"] = status
            data["status_label"] = STATUS_LABELS[status]
    return data


def _snapshot(lead: Lead, fields: List[str]) -> Dict[str, Any]:
    return {name: getattr(lead, name) for name in fields}


@dataclass
class BatchResult:
    chunk_rows: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    first_row: Optional[int] = None
    last_row: Optional[int] = None


@dataclass
class CommitStats:
    batches: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0

    def add(self, batch: BatchResult) -> None:
        self.batches += 1
        self.created += batch.created
        self.updated += batch.updated
        self.skipped += batch.skipped


class CommitWriter:
    """
    Commits one job's staged valid rows in row-number order.

    ``prepare()`` restores state from rows already committed by an earlier
    invocation (duplicate keys seen, round-robin position); then
    ``commit_next_batch()`` is called until it returns None.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        job_id: str,
        options: ImportOptions,
        *,
        batch_size: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.job_id = job_id
        self.options = options
        self.batch_size = batch_size or settings.commit_batch_size
        self.duplicates = DuplicateResolver(options.duplicates, job_id)
        self.assignment: Optional[AssignmentResolver] = None
        self.default_status = normalize_lead_status(
            options.default_status, settings.default_lead_status
        )
        self.default_source = options.default_source
        self.actor_id: Optional[str] = None
        self.stats = CommitStats()

    def prepare(self) -> None:
        try:
            with self._session_factory() as session:
                job = session.get(ImportJob, self.job_id)
                if job is None:
                    raise ImportJobNotFoundError(self.job_id)
                self.actor_id = job.created_by
                if not self.default_source:
                    self.default_source = f"Import {job.file_name}"

                already_assigned = count_assigned_rows(session, self.job_id)
                directory = (
                    load_user_directory(session)
                    if self.options.assignment.mode == "by_column"
                    else {}
                )
                self.assignment = AssignmentResolver(
                    self.options.assignment, directory, already_assigned=already_assigned
                )
                self.duplicates.seed_from_committed(session)
        except SQLAlchemyError as e:
            raise CommitWriteError(f"Failed to prepare commit for job {self.job_id}: {e}") from e

        logger.info(
            "Commit prepared for job %s (assignment=%s, duplicates=%s, round-robin position=%s)",
            self.job_id,
            self.options.assignment.mode,
            self.options.duplicates.strategy,
            self.assignment.position,
        )

    def pending_rows(self, session: Session) -> List[ImportRow]:
        return list(
            session.scalars(
                select(ImportRow)
                .where(
                    ImportRow.import_job_id == self.job_id,
                    ImportRow.status == "valid",
                    ImportRow.lead_id.is_(None),
                )
                .order_by(ImportRow.row_number)
                .limit(self.batch_size)
            )
        )

    def commit_next_batch(self) -> Optional[BatchResult]:
        """Commit the next batch; None once no valid row is left."""
        if self.assignment is None:
            raise RuntimeError("CommitWriter.prepare() must be called first")

        try:
            with self._session_factory() as session:
                rows = self.pending_rows(session)
                if not rows:
                    return None
                result = self._commit_rows(session, rows)
                self._refresh_counters(session)
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Commit batch failed for job %s: %s", self.job_id, e)
            raise CommitWriteError(f"Failed to commit batch for job {self.job_id}: {e}") from e

        self.stats.add(result)
        logger.debug(
            "Committed rows %s-%s of job %s (%s created, %s updated, %s skipped)",
            result.first_row,
            result.last_row,
            self.job_id,
            result.created,
            result.updated,
            result.skipped,
        )
        return result

    def _commit_rows(self, session: Session, rows: List[ImportRow]) -> BatchResult:
        result = BatchResult(chunk_rows=len(rows), first_row=rows[0].row_number, last_row=rows[-1].row_number)
        self.duplicates.load_batch(session, [row.normalized_data or {} for row in rows])

        for row in rows:
            normalized = row.normalized_data or {}
            match = self.duplicates.resolve(normalized)
            strategy = self.options.duplicates.strategy

            if match is not None and strategy == "skip":
                self._mark_skipped(row, match)
                result.skipped += 1
            elif match is not None and strategy == "update" and match.lead_id:
                if self._update_lead(session, row, match):
                    result.updated += 1
                else:
                    self._create_lead(session, row)
                    result.created += 1
            elif match is not None and strategy == "update":
                # First occurrence was itself skipped; nothing to update.
                self._mark_skipped(row, match)
                result.skipped += 1
            else:
                self._create_lead(session, row)
                result.created += 1

            self.duplicates.register(normalized, row.row_number, row.lead_id)
        return result

    def _mark_skipped(self, row: ImportRow, match: DuplicateMatch) -> None:
        row.status = "skipped"
        row.action = "duplicate"
        row.duplicate_of_row = match.row_number
        if match.source == "database":
            row.error_message = f"Duplicate of existing lead ({match.field}: {match.value})"
        else:
            row.error_message = f"Duplicate of row {match.row_number} ({match.field}: {match.value})"

    def _create_lead(self, session: Session, row: ImportRow) -> Lead:
        normalized = row.normalized_data or {}
        assigned_to = self.assignment.resolve(normalized, row.raw_data)
        data = build_lead_data(
            normalized,
            default_status=self.default_status,
            default_source=self.default_source,
            assigned_to=assigned_to,
            import_job_id=self.job_id,
        )
        lead = Lead(id=str(uuid.uuid4()), **data)
        session.add(lead)
        session.add(
            LeadHistory(
                lead_id=lead.id,
                actor_id=self.actor_id,
                event_type=HISTORY_EVENT_TYPE,
                before_data=None,
                after_data=data,
                event_metadata={
                    "import_job_id": self.job_id,
                    "action": "created",
                    "row_number": row.row_number,
                },
            )
        )
        row.status = "imported"
        row.action = "created"
        row.lead_id = lead.id
        return lead

    def _update_lead(self, session: Session, row: ImportRow, match: DuplicateMatch) -> bool:
        # The match may be a lead created earlier in this same batch.
        session.flush()
        lead = session.get(Lead, match.lead_id)
        if lead is None or lead.deleted_at is not None:
            logger.warning(
                "Matched lead %s for row %s of job %s no longer exists; creating a new lead",
                match.lead_id,
                row.row_number,
                self.job_id,
            )
            return False

        data = build_update_data(row.normalized_data or {})
        before = _snapshot(lead, list(data))
        for name, value in data.items():
            setattr(lead, name, value)
        lead.updated_at = datetime.now(timezone.utc)

        session.add(
            LeadHistory(
                lead_id=lead.id,
                actor_id=self.actor_id,
                event_type=HISTORY_EVENT_TYPE,
                before_data=before,
                after_data=data,
                event_metadata={
                    "import_job_id": self.job_id,
                    "action": "updated",
                    "row_number": row.row_number,
                    "matched_field": match.field,
                    "match_source": match.source,
                },
            )
        )
        row.status = "imported"
        row.action = "updated"
        row.lead_id = lead.id
        row.duplicate_of_row = match.row_number
        return True

    def _refresh_counters(self, session: Session) -> None:
        session.flush()
        counts = dict(
            session.execute(
                select(ImportRow.status, func.count(ImportRow.id))
                .where(
                    ImportRow.import_job_id == self.job_id,
                    ImportRow.status.in_(("imported", "skipped")),
                )
                .group_by(ImportRow.status)
            ).all()
        )
        job = session.get(ImportJob, self.job_id)
        if job is None:
            raise ImportJobNotFoundError(self.job_id)
        job.imported_rows = counts.get("imported", 0)
        job.skipped_rows = counts.get("skipped", 0)
