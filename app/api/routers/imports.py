"""
Lead import endpoints: job creation, column mapping, lifecycle and reports.
"""
import hashlib
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.api.schemas.shared import (
    CreateImportRequest,
    CreateImportResponse,
    ImportActionResponse,
    ImportJobListResponse,
    ImportJobSummary,
    ImportOptions,
    ImportProgress,
    MappingDetectResponse,
    MappingUpdateRequest,
)
from app.core.config import settings
from app.db.session import get_db
from app.domain.imports.error_report import count_invalid_rows, iter_error_report
from app.domain.imports.errors import (
    FileParseError,
    ImportConfigurationError,
    ImportJobNotFoundError,
    InvalidJobTransitionError,
)
from app.domain.imports.jobs import (
    build_progress,
    cancel_import_job,
    create_import_job,
    delete_import_job,
    find_job_by_file_hash,
    list_import_jobs,
    require_import_job,
    update_column_mapping,
    update_import_options,
)
from app.domain.imports.mapper import (
    MAX_SAMPLE_VALUES,
    auto_map_columns,
    check_required_mappings,
    get_mapping_summary,
)
from app.domain.imports.orchestrator import ImportOrchestrator
from app.domain.imports.parsers import detect_file_type, read_headers
from app.integrations.queue import QueuePublishError
from app.integrations.storage import (
    StorageError,
    build_storage_path,
    generate_presigned_upload_url,
    sanitize_file_name,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/imports", tags=["imports"])

MAX_UPLOAD_BYTES = settings.upload_max_file_size_mb * 1024 * 1024
HASH_CHUNK_SIZE = 1024 * 1024


def get_orchestrator(request: Request) -> ImportOrchestrator:
    return request.app.state.orchestrator


def _ensure_within_size_limit(file_size: Optional[int], file_name: str) -> None:
    """Raise an HTTPException if a file exceeds the configured upload limit."""
    if file_size is not None and file_size > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=(
                f"{file_name} is too large. "
                f"Maximum allowed upload size is {settings.upload_max_file_size_mb}MB."
            ),
        )


def _ensure_not_already_imported(db: Session, file_hash: Optional[str], created_by: Optional[str]) -> None:
    if not file_hash:
        return
    existing = find_job_by_file_hash(db, file_hash, created_by)
    if existing is not None:
        raise HTTPException(
            status_code=409,
            detail=f"This file was already imported (job {existing.id}, {existing.status})",
        )


def _raise_http(e: Exception) -> None:
    """Translate a pipeline error into the matching HTTP status."""
    if isinstance(e, ImportJobNotFoundError):
        raise HTTPException(status_code=404, detail=e.message) from e
    if isinstance(e, (InvalidJobTransitionError, ImportConfigurationError, FileParseError)):
        raise HTTPException(status_code=400, detail=e.message) from e
    if isinstance(e, QueuePublishError):
        raise HTTPException(status_code=502, detail=f"Could not schedule import: {e}") from e
    if isinstance(e, StorageError):
        raise HTTPException(status_code=502, detail=f"Storage error: {e}") from e
    raise e


@router.post("", response_model=CreateImportResponse)
async def create_import_endpoint(request: CreateImportRequest, db: Session = Depends(get_db)):
    """
    Create a pending import job and return a signed URL the client uploads
    the file to. When ``storagePath`` is given the file is assumed to be in
    storage already and no URL is issued.
    """
    try:
        file_type = detect_file_type(request.file_name)
    except FileParseError as e:
        raise HTTPException(status_code=400, detail=e.message)
    _ensure_within_size_limit(request.file_size, request.file_name)
    _ensure_not_already_imported(db, request.file_hash, request.created_by)

    storage_path = request.storage_path or build_storage_path(request.file_name, request.created_by)
    upload_url = None
    if request.storage_path is None and settings.storage_provider != "local":
        try:
            upload_url = generate_presigned_upload_url(storage_path)
        except StorageError as e:
            raise HTTPException(status_code=502, detail=f"Storage error: {e}")

    job = create_import_job(
        db,
        file_name=request.file_name,
        file_type=file_type,
        storage_path=storage_path,
        created_by=request.created_by,
        file_hash=request.file_hash,
        file_size=request.file_size,
        sheet_name=request.sheet_name,
    )
    return CreateImportResponse(
        success=True,
        import_job_id=job.id,
        storage_path=storage_path,
        upload_url=upload_url,
    )


@router.post("/upload", response_model=CreateImportResponse)
def upload_import_endpoint(
    file: UploadFile = File(...),
    created_by: Optional[str] = Form(None),
    sheet_name: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Receive the file itself, store it and create a pending job."""
    file_name = file.filename or "upload.csv"
    try:
        file_type = detect_file_type(file_name)
    except FileParseError as e:
        raise HTTPException(status_code=400, detail=e.message)

    digest = hashlib.sha256()
    file_size = 0
    for chunk in iter(lambda: file.file.read(HASH_CHUNK_SIZE), b""):
        digest.update(chunk)
        file_size += len(chunk)
    _ensure_within_size_limit(file_size, file_name)
    file_hash = digest.hexdigest()
    _ensure_not_already_imported(db, file_hash, created_by)

    storage_path = build_storage_path(file_name, created_by)
    try:
        file.file.seek(0)
        orchestrator.file_source.save(storage_path, file.file)
    except StorageError as e:
        raise HTTPException(status_code=502, detail=f"Storage error: {e}")

    job = create_import_job(
        db,
        file_name=file_name,
        file_type=file_type,
        storage_path=storage_path,
        created_by=created_by,
        file_hash=file_hash,
        file_size=file_size,
        sheet_name=sheet_name,
    )
    logger.info("Stored upload %s (%s bytes) for job %s", storage_path, file_size, job.id)
    return CreateImportResponse(success=True, import_job_id=job.id, storage_path=storage_path)


@router.post("/{job_id}/mapping/detect", response_model=MappingDetectResponse)
def detect_mapping_endpoint(
    job_id: str,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """
    Read the file's header and first rows and propose a column mapping.

    The proposal is stored on the job; it can be corrected with
    ``PUT /imports/{id}/mapping`` before starting.
    """
    try:
        job = require_import_job(db, job_id)
        stream = orchestrator.file_source.open(job.storage_path)
        try:
            headers, samples = read_headers(stream, job.file_type, job.sheet_name, MAX_SAMPLE_VALUES)
        finally:
            stream.close()
        mappings = auto_map_columns(headers, samples)
        update_column_mapping(db, job_id, mappings)
    except Exception as e:
        _raise_http(e)

    return MappingDetectResponse(
        success=True,
        headers=headers,
        mappings=mappings,
        required=check_required_mappings(mappings),
        summary=get_mapping_summary(mappings),
    )


@router.put("/{job_id}/mapping", response_model=ImportActionResponse)
async def update_mapping_endpoint(job_id: str, request: MappingUpdateRequest, db: Session = Depends(get_db)):
    try:
        job = update_column_mapping(db, job_id, request.mappings)
    except Exception as e:
        _raise_http(e)
    return ImportActionResponse(success=True, import_job_id=job.id, status=job.status, message="Mapping saved")


@router.put("/{job_id}/options", response_model=ImportActionResponse)
async def update_options_endpoint(job_id: str, options: ImportOptions, db: Session = Depends(get_db)):
    try:
        job = update_import_options(db, job_id, options)
    except Exception as e:
        _raise_http(e)
    return ImportActionResponse(success=True, import_job_id=job.id, status=job.status, message="Options saved")


@router.post("/{job_id}/start", response_model=ImportActionResponse)
def start_import_endpoint(
    job_id: str,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    try:
        orchestrator.start(job_id)
    except Exception as e:
        _raise_http(e)

    db.expire_all()
    job = require_import_job(db, job_id)
    return ImportActionResponse(success=True, import_job_id=job_id, status=job.status, message="Import started")


@router.post("/{job_id}/resume", response_model=ImportActionResponse)
def resume_import_endpoint(
    job_id: str,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    try:
        stage = orchestrator.resume(job_id)
    except Exception as e:
        _raise_http(e)

    db.expire_all()
    job = require_import_job(db, job_id)
    return ImportActionResponse(
        success=True, import_job_id=job_id, status=job.status, message=f"Resumed at {stage} stage"
    )


@router.post("/{job_id}/cancel", response_model=ImportActionResponse)
async def cancel_import_endpoint(job_id: str, db: Session = Depends(get_db)):
    """Workers notice the cancellation at their next batch boundary."""
    try:
        job = cancel_import_job(db, job_id)
    except Exception as e:
        _raise_http(e)
    return ImportActionResponse(success=True, import_job_id=job.id, status=job.status, message="Import cancelled")


@router.delete("/{job_id}", response_model=ImportActionResponse)
async def delete_import_endpoint(job_id: str, db: Session = Depends(get_db)):
    try:
        delete_import_job(db, job_id)
    except Exception as e:
        _raise_http(e)
    return ImportActionResponse(success=True, import_job_id=job_id, status="deleted", message="Import deleted")


@router.get("/{job_id}/status", response_model=ImportProgress, response_model_by_alias=True)
async def get_import_status_endpoint(job_id: str, db: Session = Depends(get_db)):
    try:
        job = require_import_job(db, job_id)
    except ImportJobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return build_progress(job)


@router.get("/{job_id}/error-report")
async def get_error_report_endpoint(
    job_id: str,
    db: Session = Depends(get_db),
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    """Stream the job's invalid rows as a CSV download."""
    try:
        job = require_import_job(db, job_id)
    except ImportJobNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)

    invalid_rows = count_invalid_rows(db, job_id)
    if not invalid_rows:
        raise HTTPException(status_code=404, detail="No invalid rows for this import")

    file_stem = sanitize_file_name(job.file_name).rsplit(".", 1)[0]
    return StreamingResponse(
        iter_error_report(orchestrator.session_factory, job_id),
        media_type="text/csv; charset=utf-8",
        headers={
            "Content-Disposition": f'attachment; filename="{file_stem}_errors.csv"',
            "X-Row-Count": str(invalid_rows),
        },
    )


@router.get("", response_model=ImportJobListResponse)
async def list_imports_endpoint(
    created_by: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    jobs, total = list_import_jobs(db, created_by=created_by, status=status, limit=limit, offset=offset)
    return ImportJobListResponse(
        success=True,
        jobs=[ImportJobSummary.model_validate(job) for job in jobs],
        total_count=total,
        limit=limit,
        offset=offset,
    )
