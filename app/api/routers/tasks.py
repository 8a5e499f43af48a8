"""
Task queue callbacks for the parse and commit work units.

The queue delivers at least once and retries on any non-2xx response, so
handlers answer 500 on failure and rely on the work units being safe to run
again.
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError

from app.api.routers.imports import get_orchestrator
from app.api.schemas.shared import CommitJobMessage, ParseJobMessage
from app.domain.imports.errors import ImportJobNotFoundError
from app.domain.imports.orchestrator import ImportOrchestrator
from app.integrations.queue import SIGNATURE_HEADER, SignatureVerificationError, verify_signature

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tasks", tags=["tasks"])


async def _verified_body(request: Request) -> bytes:
    body = await request.body()
    try:
        verify_signature(body, request.headers.get(SIGNATURE_HEADER))
    except SignatureVerificationError as e:
        logger.warning("Rejected task callback on %s: %s", request.url.path, e)
        raise HTTPException(status_code=401, detail="Invalid signature")
    return body


@router.post("/import/parse")
async def parse_task_endpoint(
    request: Request,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    body = await _verified_body(request)
    try:
        message = ParseJobMessage.model_validate_json(body)
    except ValidationError as e:
        # A malformed message will never succeed; acknowledge it.
        logger.error("Discarding malformed parse message: %s", e)
        return {"success": False, "error": "Malformed message"}

    try:
        outcome = await run_in_threadpool(orchestrator.run_parse, message.import_job_id)
    except ImportJobNotFoundError:
        logger.warning("Parse message for unknown job %s acknowledged", message.import_job_id)
        return {"success": False, "error": "Job not found"}
    except Exception as e:
        logger.exception("Parse task for job %s failed", message.import_job_id)
        raise HTTPException(status_code=500, detail=f"Parse failed: {e}")

    return {
        "success": True,
        "importJobId": message.import_job_id,
        "totalRows": outcome.total_rows if outcome else None,
        "validRows": outcome.valid_rows if outcome else None,
    }


@router.post("/import/commit")
async def commit_task_endpoint(
    request: Request,
    orchestrator: ImportOrchestrator = Depends(get_orchestrator),
):
    body = await _verified_body(request)
    try:
        message = CommitJobMessage.model_validate_json(body)
    except ValidationError as e:
        logger.error("Discarding malformed commit message: %s", e)
        return {"success": False, "error": "Malformed message"}

    try:
        completed = await run_in_threadpool(orchestrator.run_commit, message)
    except ImportJobNotFoundError:
        logger.warning("Commit message for unknown job %s acknowledged", message.import_job_id)
        return {"success": False, "error": "Job not found"}
    except Exception as e:
        logger.exception("Commit task for job %s failed", message.import_job_id)
        raise HTTPException(status_code=500, detail=f"Commit failed: {e}")

    return {"success": True, "importJobId": message.import_job_id, "completed": completed}
