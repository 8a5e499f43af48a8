"""
Persistent tracking and state machine for lead import jobs.

    pending -> parsing -> importing -> completed
    parsing -> completed (no valid rows)
    failed / cancelled reachable from any non-terminal status

A failed job can be retried explicitly (``retry=True``), which re-enters the
stage it failed in; nothing else ever leaves a terminal status.
"""
from __future__ import annotations

import logging
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from app.api.schemas.shared import (
    ColumnMapping,
    ColumnMappingConfig,
    ImportOptions,
    ImportProgress,
)
from app.core.config import settings
from app.db.models import ImportJob, ImportRow
from app.domain.imports.errors import (
    ImportConfigurationError,
    ImportJobNotFoundError,
    InvalidJobTransitionError,
)

logger = logging.getLogger(__name__)


class ImportStatus(str, Enum):
    PENDING = "pending"
    PARSING = "parsing"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = {ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED}
ACTIVE_STATUSES = {ImportStatus.PARSING, ImportStatus.IMPORTING}
CANCELLABLE_STATUSES = {ImportStatus.PENDING, ImportStatus.PARSING, ImportStatus.IMPORTING}

ALLOWED_TRANSITIONS: Dict[ImportStatus, set] = {
    ImportStatus.PENDING: {ImportStatus.PARSING, ImportStatus.FAILED, ImportStatus.CANCELLED},
    ImportStatus.PARSING: {
        ImportStatus.IMPORTING,
        ImportStatus.COMPLETED,
        ImportStatus.FAILED,
        ImportStatus.CANCELLED,
    },
    ImportStatus.IMPORTING: {ImportStatus.COMPLETED, ImportStatus.FAILED, ImportStatus.CANCELLED},
    ImportStatus.COMPLETED: set(),
    ImportStatus.FAILED: set(),
    ImportStatus.CANCELLED: set(),
}

RETRY_TRANSITIONS: Dict[ImportStatus, set] = {
    ImportStatus.FAILED: {ImportStatus.PARSING, ImportStatus.IMPORTING},
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: str, target: str, *, retry: bool = False) -> bool:
    current_status = ImportStatus(current)
    target_status = ImportStatus(target)
    if target_status in ALLOWED_TRANSITIONS[current_status]:
        return True
    return retry and target_status in RETRY_TRANSITIONS.get(current_status, set())


def estimate_total_chunks(file_size: Optional[int], batch_size: Optional[int] = None) -> Optional[int]:
    """Rough chunk count from the file size, shown before the row count is known."""
    if not file_size:
        return None
    batch_size = batch_size or settings.import_batch_size
    estimated_rows = file_size / settings.estimated_avg_row_size_bytes
    return max(1, math.ceil(estimated_rows / batch_size))


def create_import_job(
    session: Session,
    *,
    file_name: str,
    file_type: str,
    storage_path: str,
    created_by: Optional[str] = None,
    file_hash: Optional[str] = None,
    file_size: Optional[int] = None,
    sheet_name: Optional[str] = None,
) -> ImportJob:
    """Create and persist a new ``pending`` import job."""
    job = ImportJob(
        file_name=file_name,
        file_type=file_type,
        storage_path=storage_path,
        created_by=created_by,
        file_hash=file_hash,
        file_size=file_size,
        sheet_name=sheet_name,
        status=ImportStatus.PENDING.value,
        total_chunks=estimate_total_chunks(file_size),
    )
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info("Created import job %s for '%s' (%s)", job.id, file_name, file_type)
    return job


def get_import_job(session: Session, job_id: str) -> Optional[ImportJob]:
    """Fetch a single job by ID."""
    return session.get(ImportJob, job_id)


def require_import_job(session: Session, job_id: str) -> ImportJob:
    job = session.get(ImportJob, job_id)
    if job is None:
        raise ImportJobNotFoundError(job_id)
    return job


def list_import_jobs(
    session: Session,
    *,
    created_by: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[ImportJob], int]:
    """List jobs, newest first."""
    filters = []
    if created_by:
        filters.append(ImportJob.created_by == created_by)
    if status:
        filters.append(ImportJob.status == status)

    jobs = list(
        session.scalars(
            select(ImportJob)
            .where(*filters)
            .order_by(ImportJob.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
    )
    total = session.execute(select(func.count(ImportJob.id)).where(*filters)).scalar() or 0
    return jobs, total


def find_job_by_file_hash(
    session: Session,
    file_hash: str,
    created_by: Optional[str] = None,
) -> Optional[ImportJob]:
    """Return a live (not failed/cancelled) job that already holds this file."""
    query = select(ImportJob).where(
        ImportJob.file_hash == file_hash,
        ImportJob.status.notin_((ImportStatus.FAILED.value, ImportStatus.CANCELLED.value)),
    )
    if created_by:
        query = query.where(ImportJob.created_by == created_by)
    return session.scalars(query.limit(1)).first()


def _require_pending(job: ImportJob, action: str) -> None:
    if job.status != ImportStatus.PENDING.value:
        raise InvalidJobTransitionError(
            job.id,
            job.status,
            action,
            f"Cannot {action} import job {job.id} in status '{job.status}'",
        )


def update_column_mapping(session: Session, job_id: str, mappings: List[ColumnMapping]) -> ImportJob:
    """Store a validated column mapping on a pending job."""
    job = require_import_job(session, job_id)
    _require_pending(job, "change the mapping of")
    try:
        config = ColumnMappingConfig(mappings=mappings)
    except ValueError as e:
        raise ImportConfigurationError(str(e)) from e
    job.column_mapping = [m.model_dump(mode="json", by_alias=True) for m in config.mappings]
    session.commit()
    return job


def update_import_options(session: Session, job_id: str, options: ImportOptions) -> ImportJob:
    """Store assignment/duplicate/default options on a pending job."""
    job = require_import_job(session, job_id)
    _require_pending(job, "change the options of")
    store_import_options(job, options)
    session.commit()
    return job


def store_import_options(job: ImportJob, options: ImportOptions) -> None:
    job.assignment_config = options.assignment.model_dump(mode="json", by_alias=True)
    job.duplicate_config = options.duplicates.model_dump(mode="json", by_alias=True)
    job.default_status = options.default_status
    job.default_source = options.default_source


def transition_job(
    session: Session,
    job: ImportJob,
    target: ImportStatus,
    *,
    error_message: Optional[str] = None,
    error_details: Optional[Dict[str, Any]] = None,
    retry: bool = False,
) -> ImportJob:
    """
    Move a job to ``target`` and commit.

    Raises:
        InvalidJobTransitionError: If the state machine forbids the move
    """
    current = job.status
    if not can_transition(current, target.value, retry=retry):
        raise InvalidJobTransitionError(job.id, current, target.value)

    job.status = target.value
    now = _utcnow()
    if target == ImportStatus.PARSING and job.started_at is None:
        job.started_at = now
    if target in ACTIVE_STATUSES and retry:
        job.error_message = None
        job.error_details = None
    if target in TERMINAL_STATUSES:
        job.completed_at = now
    if error_message is not None:
        job.error_message = error_message
    if error_details is not None:
        job.error_details = error_details

    session.commit()
    logger.info("Import job %s: %s -> %s", job.id, current, target.value)
    return job


def claim_job_status(
    session: Session,
    job_id: str,
    expected: ImportStatus,
    target: ImportStatus,
) -> bool:
    """
    Move a job from ``expected`` to ``target`` with one conditional UPDATE.

    Returns False when the job is no longer in ``expected``, i.e. a
    concurrent caller claimed it first.
    """
    if not can_transition(expected.value, target.value):
        raise InvalidJobTransitionError(job_id, expected.value, target.value)

    values: Dict[str, Any] = {"status": target.value}
    if target == ImportStatus.PARSING:
        values["started_at"] = func.coalesce(ImportJob.started_at, _utcnow())
    claimed = session.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == expected.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    ).rowcount
    session.commit()
    if claimed:
        logger.info("Import job %s: %s -> %s", job_id, expected.value, target.value)
    return bool(claimed)


def mark_job_failed(
    session: Session,
    job_id: str,
    error_message: str,
    error_details: Optional[Dict[str, Any]] = None,
) -> Optional[ImportJob]:
    """
    Record a failure. Returns None when the job is gone or already
    completed/cancelled, in which case nothing is changed.
    """
    job = session.get(ImportJob, job_id)
    if job is None:
        return None
    if job.status == ImportStatus.FAILED.value:
        job.error_message = error_message
        job.error_details = error_details
        session.commit()
        return job
    if not can_transition(job.status, ImportStatus.FAILED.value):
        logger.warning(
            "Not marking job %s failed: already %s (%s)", job_id, job.status, error_message
        )
        return None
    return transition_job(
        session,
        job,
        ImportStatus.FAILED,
        error_message=error_message,
        error_details=error_details or {},
    )


def cancel_import_job(session: Session, job_id: str) -> ImportJob:
    """Cancel a pending or running job; workers stop at the next batch boundary."""
    job = require_import_job(session, job_id)
    if ImportStatus(job.status) not in CANCELLABLE_STATUSES:
        raise InvalidJobTransitionError(
            job.id,
            job.status,
            ImportStatus.CANCELLED.value,
            f"Import job {job.id} is already {job.status} and cannot be cancelled",
        )
    return transition_job(session, job, ImportStatus.CANCELLED)


def delete_import_job(session: Session, job_id: str) -> None:
    """Delete a job and its staged rows. Running jobs must be cancelled first."""
    job = require_import_job(session, job_id)
    if ImportStatus(job.status) in ACTIVE_STATUSES:
        raise InvalidJobTransitionError(
            job.id,
            job.status,
            "delete",
            f"Import job {job.id} is {job.status}; cancel it before deleting",
        )
    deleted_rows = session.execute(
        delete(ImportRow).where(ImportRow.import_job_id == job_id)
    ).rowcount
    session.delete(job)
    session.commit()
    logger.info("Deleted import job %s and %s staged rows", job_id, deleted_rows)


def get_job_status(session: Session, job_id: str) -> Optional[str]:
    """Fresh read of the status column (used for cooperative cancellation)."""
    return session.execute(select(ImportJob.status).where(ImportJob.id == job_id)).scalar()


def build_progress(job: ImportJob) -> ImportProgress:
    return ImportProgress(
        status=job.status,
        total_rows=job.total_rows,
        processed_rows=job.processed_rows or 0,
        valid_rows=job.valid_rows or 0,
        invalid_rows=job.invalid_rows or 0,
        imported_rows=job.imported_rows or 0,
        skipped_rows=job.skipped_rows or 0,
        current_chunk=job.current_chunk or 0,
        total_chunks=job.total_chunks,
        error_message=job.error_message,
        completed_at=job.completed_at,
    )
