"""
Staging writer: persists validated rows to ``import_rows`` in batches.

Each batch insert, the job's running counters and the resume token are
written in a single transaction, so a crash leaves either the whole batch
(with its checkpoint) or none of it.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import ImportJob, ImportRow
from app.domain.imports.errors import ImportJobNotFoundError, StagingWriteError, StaleParseRunError
from app.domain.imports.validators import RowResult

logger = logging.getLogger(__name__)

RESUME_TOKEN_VERSION = 1


@dataclass
class ResumeToken:
    """Checkpoint written with every staged batch."""

    last_row_number: int = 0
    chunk_number: int = 0
    valid_count: int = 0
    invalid_count: int = 0
    timestamp: Optional[str] = None
    version: int = RESUME_TOKEN_VERSION

    def to_json(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_json(cls, data: Optional[Dict[str, Any]]) -> Optional["ResumeToken"]:
        """Return None for a missing token or one written by another token version."""
        if not data:
            return None
        if data.get("version") != RESUME_TOKEN_VERSION:
            logger.warning("Ignoring resume token with unsupported version %r", data.get("version"))
            return None
        return cls(
            last_row_number=int(data.get("last_row_number", 0)),
            chunk_number=int(data.get("chunk_number", 0)),
            valid_count=int(data.get("valid_count", 0)),
            invalid_count=int(data.get("invalid_count", 0)),
            timestamp=data.get("timestamp"),
        )


class StagingWriter:
    """
    Writes one job's parse results to the staging table.

    Call ``prepare()`` once per work-unit invocation, then ``write_batch()``
    for every batch in row-number order.
    """

    def __init__(self, session_factory: Callable[[], Session], job_id: str):
        self._session_factory = session_factory
        self.job_id = job_id
        self.token = ResumeToken()
        self.resumed = False

    @property
    def next_row_number(self) -> int:
        return self.token.last_row_number + 1

    @property
    def valid_count(self) -> int:
        return self.token.valid_count

    @property
    def invalid_count(self) -> int:
        return self.token.invalid_count

    def prepare(self) -> ResumeToken:
        """
        Load the job's checkpoint and purge staged rows past it.

        Without a checkpoint every staged row of the job is removed and the
        counters restart at zero.
        """
        try:
            with self._session_factory() as session:
                job = session.get(ImportJob, self.job_id)
                if job is None:
                    raise ImportJobNotFoundError(self.job_id)

                token = ResumeToken.from_json(job.last_checkpoint)
                self.resumed = token is not None and token.last_row_number > 0
                self.token = token or ResumeToken()

                purged = session.execute(
                    delete(ImportRow).where(
                        ImportRow.import_job_id == self.job_id,
                        ImportRow.row_number > self.token.last_row_number,
                    )
                ).rowcount

                job.valid_rows = self.token.valid_count
                job.invalid_rows = self.token.invalid_count
                job.processed_rows = self.token.valid_count + self.token.invalid_count
                job.current_chunk = self.token.chunk_number
                job.last_checkpoint = self.token.to_json() if self.resumed else None
                session.commit()
        except SQLAlchemyError as e:
            raise StagingWriteError(f"Failed to prepare staging for job {self.job_id}: {e}") from e

        if self.resumed:
            logger.info(
                "Resuming parse of job %s after row %s (%s valid, %s invalid, purged %s rows)",
                self.job_id,
                self.token.last_row_number,
                self.token.valid_count,
                self.token.invalid_count,
                purged,
            )
        elif purged:
            logger.info("Purged %s stale staged rows for job %s", purged, self.job_id)
        return self.token

    def write_batch(self, results: List[RowResult]) -> ResumeToken:
        """
        Insert a batch and advance the checkpoint atomically.

        Raises:
            StaleParseRunError: The stored checkpoint moved since ``prepare()``
            StagingWriteError: The batch is out of order or the write failed
        """
        if not results:
            return self.token

        if results[0].row_number != self.next_row_number:
            raise StagingWriteError(
                f"Batch for job {self.job_id} starts at row {results[0].row_number}, "
                f"expected {self.next_row_number}"
            )

        chunk_number = self.token.chunk_number + 1
        valid = sum(1 for r in results if r.is_valid)
        new_token = ResumeToken(
            last_row_number=results[-1].row_number,
            chunk_number=chunk_number,
            valid_count=self.token.valid_count + valid,
            invalid_count=self.token.invalid_count + (len(results) - valid),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

        try:
            with self._session_factory() as session:
                # Row lock so two runs of the same job cannot both append.
                job = session.scalars(
                    select(ImportJob).where(ImportJob.id == self.job_id).with_for_update()
                ).first()
                if job is None:
                    raise ImportJobNotFoundError(self.job_id)
                stored = ResumeToken.from_json(job.last_checkpoint)
                stored_last_row = stored.last_row_number if stored else 0
                if stored_last_row != self.token.last_row_number:
                    raise StaleParseRunError(
                        f"Job {self.job_id} was staged up to row {stored_last_row} by another run",
                        {"expected_last_row": self.token.last_row_number, "stored_last_row": stored_last_row},
                    )

                session.add_all(
                    [
                        ImportRow(
                            import_job_id=self.job_id,
                            row_number=result.row_number,
                            chunk_number=chunk_number,
                            status="valid" if result.is_valid else "invalid",
                            raw_data=result.raw_data,
                            normalized_data=result.normalized_data,
                            validation_errors=result.errors or None,
                        )
                        for result in results
                    ]
                )
                job.valid_rows = new_token.valid_count
                job.invalid_rows = new_token.invalid_count
                job.processed_rows = new_token.valid_count + new_token.invalid_count
                job.current_chunk = chunk_number
                job.last_checkpoint = new_token.to_json()
                session.commit()
        except SQLAlchemyError as e:
            logger.error("Staging write failed for job %s chunk %s: %s", self.job_id, chunk_number, e)
            raise StagingWriteError(
                f"Failed to write rows {results[0].row_number}-{results[-1].row_number}: {e}",
                {"chunk_number": chunk_number},
            ) from e

        self.token = new_token
        logger.debug(
            "Staged chunk %s for job %s (rows %s-%s, %s valid)",
            chunk_number,
            self.job_id,
            results[0].row_number,
            results[-1].row_number,
            valid,
        )
        return new_token
