"""
Exception hierarchy for the lead import pipeline.

Row-level validation problems are not exceptions: they are recorded on the
staged row. Everything here is fatal to the job (or rejected before the job
leaves ``pending``).
"""
from typing import Any, Dict, Optional


class ImportPipelineError(Exception):
    """Base exception for import pipeline failures."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ImportJobNotFoundError(ImportPipelineError):
    """Raised when an import job id does not exist."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Import job {job_id} not found", {"job_id": job_id})


class InvalidJobTransitionError(ImportPipelineError):
    """Raised when an operation is not allowed in the job's current status."""

    def __init__(self, job_id: str, current: str, requested: str, message: Optional[str] = None):
        self.job_id = job_id
        self.current = current
        self.requested = requested
        super().__init__(
            message or f"Cannot move import job {job_id} from '{current}' to '{requested}'",
            {"job_id": job_id, "current_status": current, "requested": requested},
        )


class ImportConfigurationError(ImportPipelineError):
    """Missing or malformed mapping/assignment/duplicate configuration."""
    pass


class FileParseError(ImportPipelineError):
    """Raised when the uploaded file cannot be read as the declared type."""
    pass


class EmptyFileError(FileParseError):
    """Raised when the file has no header row at all."""
    pass


class StagingWriteError(ImportPipelineError):
    """Raised when a batch cannot be written to the staging table."""
    pass


class StaleParseRunError(ImportPipelineError):
    """Another parse run advanced the job's checkpoint past this one."""
    pass


class CommitWriteError(ImportPipelineError):
    """Raised when a batch cannot be committed to the leads table."""
    pass


class ImportCancelledError(ImportPipelineError):
    """Signals that the job was cancelled between two batches."""
    pass
