"""
Import orchestration: sequences the parse and commit work units of a job.

Both work units are safe to invoke more than once for the same job (queue
redelivery, manual resume): parse continues from the staging checkpoint and
commit only picks up staged rows that are still uncommitted. Cancellation is
cooperative and checked between batches.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, BinaryIO, Callable, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.api.schemas.shared import (
    ColumnMappingConfig,
    CommitJobMessage,
    ImportOptions,
    ParseJobMessage,
    parse_assignment_config,
    parse_column_mapping,
    parse_duplicate_config,
)
from app.core.config import settings
from app.db.models import ImportJob
from app.domain.imports.commit import CommitWriter
from app.domain.imports.dispatch import InlineDispatcher, JobDispatcher
from app.domain.imports.errors import (
    ImportCancelledError,
    ImportConfigurationError,
    InvalidJobTransitionError,
    StaleParseRunError,
)
from app.domain.imports.jobs import (
    ImportStatus,
    claim_job_status,
    get_job_status,
    mark_job_failed,
    require_import_job,
    store_import_options,
    transition_job,
)
from app.domain.imports.parsers import RawRow, stream_parse_file
from app.domain.imports.staging import StagingWriter
from app.domain.imports.validators import process_rows
from app.integrations.notifications import Notifier
from app.integrations.queue import QueuePublishError

logger = logging.getLogger(__name__)


@dataclass
class ParseOutcome:
    total_rows: int
    valid_rows: int
    invalid_rows: int
    needs_commit: bool


def load_job_options(job: ImportJob) -> ImportOptions:
    """Typed options from the JSON stored on the job."""
    try:
        return ImportOptions(
            assignment=parse_assignment_config(job.assignment_config),
            duplicates=parse_duplicate_config(job.duplicate_config),
            default_status=job.default_status,
            default_source=job.default_source,
        )
    except ValidationError as e:
        raise ImportConfigurationError(f"Invalid import options: {e}") from e


def load_job_mapping(job: ImportJob) -> ColumnMappingConfig:
    if not job.column_mapping:
        raise ImportConfigurationError("Column mapping is not configured")
    try:
        return parse_column_mapping(job.column_mapping)
    except ValidationError as e:
        raise ImportConfigurationError(f"Invalid column mapping: {e}") from e


class ImportOrchestrator:
    """
    Owns the import job lifecycle.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        file_source: Object with ``open(storage_path) -> binary stream``
        dispatcher: Where parse/commit work units are sent
        notifier: Receives completion/failure notifications
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        file_source: Any,
        dispatcher: JobDispatcher,
        notifier: Optional[Notifier] = None,
        *,
        parse_batch_size: Optional[int] = None,
        commit_batch_size: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.file_source = file_source
        self.dispatcher = dispatcher
        self.notifier = notifier or Notifier()
        self.parse_batch_size = parse_batch_size or settings.import_batch_size
        self.commit_batch_size = commit_batch_size or settings.commit_batch_size
        if isinstance(dispatcher, InlineDispatcher):
            dispatcher.bind(self)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def start(self, job_id: str) -> None:
        """
        Validate a pending job's configuration, move it to ``parsing`` and
        dispatch its parse. Only one caller can win the move, so a job is
        never handed to two parse runs by concurrent starts.

        Raises:
            ImportConfigurationError: Mapping/options unusable; job stays pending
            InvalidJobTransitionError: Job is not pending
            QueuePublishError: Dispatch failed; job is marked failed
        """
        with self.session_factory() as session:
            job = require_import_job(session, job_id)
            if job.status != ImportStatus.PENDING.value:
                raise self._already_started(job)
            mapping = load_job_mapping(job)
            if not mapping.has_contact_field:
                raise ImportConfigurationError(
                    "Map at least one contact column (email, phone or external id) before starting the import"
                )
            load_job_options(job)

            if not claim_job_status(session, job_id, ImportStatus.PENDING, ImportStatus.PARSING):
                session.expire_all()
                raise self._already_started(require_import_job(session, job_id))

        logger.info("Starting import job %s", job_id)
        self._dispatch_parse(job_id)

    def resume(self, job_id: str) -> str:
        """
        Re-dispatch the unfinished stage of an interrupted or failed job.

        Returns:
            The stage that was dispatched ("parse" or "commit")
        """
        with self.session_factory() as session:
            job = require_import_job(session, job_id)
            status = ImportStatus(job.status)

            if status == ImportStatus.PENDING:
                stage = "parse"
            elif status == ImportStatus.FAILED:
                parse_finished = job.total_rows is not None
                target = ImportStatus.IMPORTING if parse_finished else ImportStatus.PARSING
                # Configuration errors would fail again immediately.
                load_job_mapping(job)
                load_job_options(job)
                transition_job(session, job, target, retry=True)
                stage = "commit" if parse_finished else "parse"
            elif status == ImportStatus.PARSING:
                stage = "parse"
            elif status == ImportStatus.IMPORTING:
                stage = "commit"
            else:
                raise InvalidJobTransitionError(
                    job.id, job.status, "resume", f"Import job {job.id} is {job.status} and cannot be resumed"
                )

        logger.info("Resuming import job %s at %s stage", job_id, stage)
        if stage == "parse":
            if status == ImportStatus.PENDING:
                self.start(job_id)
            else:
                self._dispatch_parse(job_id)
        else:
            self._dispatch_commit(job_id)
        return stage

    # ------------------------------------------------------------------
    # Parse work unit
    # ------------------------------------------------------------------

    def run_parse(self, job_id: str) -> Optional[ParseOutcome]:
        """Parse work unit; a no-op unless the job is in ``parsing``."""
        try:
            outcome = self._parse(job_id)
        except ImportCancelledError:
            logger.info("Parse of job %s stopped: job was cancelled", job_id)
            return None
        except StaleParseRunError as e:
            logger.warning("Parse of job %s stopped: %s", job_id, e.message)
            return None
        except Exception as e:
            self._fail(job_id, e, stage="parse")
            raise

        if outcome is not None and outcome.needs_commit:
            self._dispatch_commit(job_id)
        return outcome

    def _parse(self, job_id: str) -> Optional[ParseOutcome]:
        with self.session_factory() as session:
            job = require_import_job(session, job_id)
            if job.status != ImportStatus.PARSING.value:
                logger.info("Ignoring parse of job %s in status %s", job_id, job.status)
                return None

            mapping = load_job_mapping(job)
            storage_path = job.storage_path
            file_type = job.file_type
            sheet_name = job.sheet_name

        writer = StagingWriter(self.session_factory, job_id)
        writer.prepare()

        def on_chunk(headers: List[str], rows: List[RawRow]) -> None:
            self._check_cancelled(job_id)
            writer.write_batch(process_rows(rows, headers, mapping.mappings))

        stream: BinaryIO = self.file_source.open(storage_path)
        try:
            stats = stream_parse_file(
                stream,
                file_type,
                on_chunk,
                chunk_size=self.parse_batch_size,
                start_row=writer.next_row_number,
                sheet_name=sheet_name,
            )
        finally:
            stream.close()

        self._check_cancelled(job_id)

        with self.session_factory() as session:
            job = require_import_job(session, job_id)
            if job.status != ImportStatus.PARSING.value:
                # Cancelled after the last batch, or finished by another run.
                logger.info("Parse of job %s finished but job is now %s", job_id, job.status)
                return None
            job.total_rows = stats.total_rows
            job.total_chunks = writer.token.chunk_number
            valid_rows = job.valid_rows or 0
            invalid_rows = job.invalid_rows or 0

            if valid_rows == 0:
                transition_job(session, job, ImportStatus.COMPLETED)
                logger.info(
                    "Import job %s completed at parse: %s rows, none valid", job_id, stats.total_rows
                )
                self._notify_completed(job)
                needs_commit = False
            else:
                transition_job(session, job, ImportStatus.IMPORTING)
                logger.info(
                    "Import job %s parsed: %s rows (%s valid, %s invalid)",
                    job_id,
                    stats.total_rows,
                    valid_rows,
                    invalid_rows,
                )
                needs_commit = True

        return ParseOutcome(
            total_rows=stats.total_rows,
            valid_rows=valid_rows,
            invalid_rows=invalid_rows,
            needs_commit=needs_commit,
        )

    # ------------------------------------------------------------------
    # Commit work unit
    # ------------------------------------------------------------------

    def run_commit(self, message: CommitJobMessage) -> bool:
        """
        Commit work unit. Returns True when this invocation completed the job.
        """
        job_id = message.import_job_id
        try:
            return self._commit(message)
        except ImportCancelledError:
            logger.info("Commit of job %s stopped: job was cancelled", job_id)
            return False
        except Exception as e:
            self._fail(job_id, e, stage="commit")
            raise

    def _commit(self, message: CommitJobMessage) -> bool:
        job_id = message.import_job_id
        options = message.to_options()

        with self.session_factory() as session:
            job = require_import_job(session, job_id)
            if job.status != ImportStatus.IMPORTING.value:
                logger.info("Ignoring commit of job %s in status %s", job_id, job.status)
                return False
            store_import_options(job, options)
            session.commit()

        writer = CommitWriter(self.session_factory, job_id, options, batch_size=self.commit_batch_size)
        writer.prepare()

        while True:
            self._check_cancelled(job_id)
            if writer.commit_next_batch() is None:
                break

        with self.session_factory() as session:
            job = require_import_job(session, job_id)
            if job.status != ImportStatus.IMPORTING.value:
                logger.info("Commit of job %s finished but job is now %s", job_id, job.status)
                return False
            transition_job(session, job, ImportStatus.COMPLETED)
            logger.info(
                "Import job %s completed: %s imported, %s skipped (%s created, %s updated this run)",
                job_id,
                job.imported_rows,
                job.skipped_rows,
                writer.stats.created,
                writer.stats.updated,
            )
            self._notify_completed(job)
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def build_commit_message(self, job_id: str) -> CommitJobMessage:
        with self.session_factory() as session:
            job = require_import_job(session, job_id)
            options = load_job_options(job)
        return CommitJobMessage(
            import_job_id=job_id,
            assignment_config=options.assignment,
            duplicate_config=options.duplicates,
            default_status=options.default_status,
            default_source=options.default_source,
        )

    def _dispatch_parse(self, job_id: str) -> None:
        try:
            message_id = self.dispatcher.dispatch_parse(ParseJobMessage(import_job_id=job_id))
        except QueuePublishError as e:
            self._fail(job_id, e, stage="dispatch")
            raise
        self._record_message_id(job_id, message_id)

    def _dispatch_commit(self, job_id: str) -> None:
        try:
            message = self.build_commit_message(job_id)
            message_id = self.dispatcher.dispatch_commit(message)
        except (QueuePublishError, ImportConfigurationError) as e:
            self._fail(job_id, e, stage="dispatch")
            raise
        self._record_message_id(job_id, message_id)

    def _record_message_id(self, job_id: str, message_id: Optional[str]) -> None:
        if not message_id:
            return
        with self.session_factory() as session:
            job = session.get(ImportJob, job_id)
            if job is not None:
                job.worker_id = message_id
                session.commit()

    @staticmethod
    def _already_started(job: ImportJob) -> InvalidJobTransitionError:
        return InvalidJobTransitionError(
            job.id, job.status, ImportStatus.PARSING.value,
            f"Import job {job.id} has already been started ({job.status})",
        )

    def _check_cancelled(self, job_id: str) -> None:
        with self.session_factory() as session:
            status = get_job_status(session, job_id)
        if status == ImportStatus.CANCELLED.value:
            raise ImportCancelledError(f"Import job {job_id} was cancelled")

    def _fail(self, job_id: str, error: Exception, *, stage: str) -> None:
        message = getattr(error, "message", None) or str(error) or type(error).__name__
        details: Dict[str, Any] = dict(getattr(error, "details", None) or {})
        details.update({"stage": stage, "error_type": type(error).__name__})
        logger.error("Import job %s failed during %s: %s", job_id, stage, message)

        try:
            with self.session_factory() as session:
                job = mark_job_failed(session, job_id, message, details)
                if job is not None:
                    self._notify_failed(job)
        except Exception as persist_error:
            # The original error is re-raised by the caller.
            logger.error("Could not record failure of job %s: %s", job_id, persist_error)

    def _notify_completed(self, job: ImportJob) -> None:
        try:
            self.notifier.import_completed(job.created_by, job.id, job.file_name, job.imported_rows or 0)
        except Exception as e:
            logger.warning("Completion notification for job %s failed: %s", job.id, e)

    def _notify_failed(self, job: ImportJob) -> None:
        try:
            self.notifier.import_failed(job.created_by, job.id, job.file_name, job.error_message or "")
        except Exception as e:
            logger.warning("Failure notification for job %s failed: %s", job.id, e)
