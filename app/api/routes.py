"""FastAPI endpoints for the statement import API.

This module defines the routes for uploading a statement, polling an import job, confirming or cancelling it,
and health checks. It is a thin HTTP layer over ``app.services.import_service``.
"""

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile

from app.api.dependencies import get_context
from app.core.context import PipelineContext
from app.core.errors import (
    USER_MESSAGES,
    ErrorCode,
    InvalidTransitionError,
    JobNotFoundError,
    StaleJobError,
    TransientStorageError,
)
from app.core.models import ConfirmResult, ImportJob
from app.core.utils import get_logger
from app.services import import_service
from app.services.import_service import UploadRejectedError

router = APIRouter()
logger = get_logger("statement-import.api")

JOB_EXAMPLE = {
    "id": "123e4567-e89b-12d3-a456-426614174000",
    "user_id": "user-1",
    "file_key": "imports/user-1/1700000000000-extracto.pdf",
    "file_name": "extracto.pdf",
    "mime_type": "application/pdf",
    "file_size": 48213,
    "status": "PARSING",
    "progress": 40,
    "error": None,
    "error_code": None,
    "bank_format": None,
    "result": None,
    "cancel_requested": False,
    "created_at": "2025-05-18T10:30:49+00:00",
    "updated_at": "2025-05-18T10:30:52+00:00",
    "completed_at": None,
}


@router.post(
    "/imports",
    status_code=202,
    response_model=ImportJob,
    summary="Upload a bank statement and start an import job",
    description=(
        "Upload a bank statement (PDF, CSV or a photo of a statement). "
        "The file is stored and a background job extracts the account and its transactions. "
        "Poll the returned job until it reaches `REVIEW`, then confirm or cancel it.\n\n"
        "**Request:**\n"
        "- Content-Type: multipart/form-data\n"
        "- Form fields: `file`, `user_id`, optional `password` for protected PDFs\n\n"
        "**Response:**\n"
        "- 202 Accepted: the new job in `PENDING`.\n"
        "- 400 Bad Request: empty, oversized or unsupported file."
    ),
    response_description="Job accepted.",
    responses={
        202: {"description": "Job accepted.", "content": {"application/json": {"example": JOB_EXAMPLE}}},
        400: {
            "description": "Upload rejected.",
            "content": {"application/json": {"example": {"detail": "Tipo de archivo no soportado."}}},
        },
        503: {
            "description": "File storage unavailable.",
            "content": {
                "application/json": {"example": {"detail": USER_MESSAGES[ErrorCode.SERVICE_UNAVAILABLE]}}
            },
        },
    },
)
async def create_import(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    password: str | None = Form(None),
    context: PipelineContext = Depends(get_context),
) -> ImportJob:
    """Store an uploaded statement and queue it for import."""
    logger.info(f"Received upload request: filename={file.filename}, content_type={file.content_type}")
    data = await file.read()
    mime_type = file.content_type or "application/octet-stream"
    try:
        return import_service.create_import_job(
            context, user_id, data, file.filename or "upload", mime_type, password=password
        )
    except UploadRejectedError as exc:
        logger.warning(f"Rejected upload {file.filename}: {exc}")
        raise HTTPException(400, str(exc)) from exc
    except TransientStorageError as exc:
        logger.exception(f"Could not store upload {file.filename}")
        raise HTTPException(503, USER_MESSAGES[ErrorCode.SERVICE_UNAVAILABLE]) from exc


@router.get(
    "/imports/{job_id}",
    response_model=ImportJob,
    summary="Get import job status",
    description=(
        "Check the status and progress of an import job. Jobs in `REVIEW` carry the extracted `result`; "
        "failed jobs carry a user-facing `error` and a machine-readable `error_code` "
        "(`PASSWORD_REQUIRED` asks the client to upload again with a password)."
    ),
    response_description="Job status, progress and result.",
    responses={
        200: {"description": "Job found.", "content": {"application/json": {"example": JOB_EXAMPLE}}},
        404: {
            "description": "Job not found.",
            "content": {"application/json": {"example": {"detail": "Job not found"}}},
        },
    },
)
async def get_import(job_id: str, context: PipelineContext = Depends(get_context)) -> ImportJob:
    """Get an import job."""
    try:
        return import_service.get_import_job(context, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(404, "Job not found") from exc


@router.post(
    "/imports/{job_id}/confirm",
    response_model=ConfirmResult,
    summary="Confirm a reviewed import",
    description=(
        "Create the detected accounts and transactions of a job in `REVIEW` and mark it `CONFIRMED`.\n\n"
        "- 404 Not Found: unknown job.\n"
        "- 409 Conflict: the job is not in `REVIEW`."
    ),
    response_description="Number of accounts and transactions created.",
    responses={
        200: {
            "description": "Import confirmed.",
            "content": {"application/json": {"example": {"accounts_created": 1, "transactions_created": 12}}},
        },
        404: {"description": "Job not found."},
        409: {"description": "Job is not in REVIEW."},
    },
)
async def confirm_import(job_id: str, context: PipelineContext = Depends(get_context)) -> ConfirmResult:
    """Confirm an import job."""
    try:
        return import_service.confirm_import_job(context, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(404, "Job not found") from exc
    except (InvalidTransitionError, StaleJobError) as exc:
        raise HTTPException(409, str(exc)) from exc


@router.post(
    "/imports/{job_id}/cancel",
    response_model=ImportJob,
    summary="Cancel an import job",
    description=(
        "Cancel a job that has not finished. Idle jobs are cancelled at once; running jobs stop at their next "
        "stage boundary.\n\n"
        "- 404 Not Found: unknown job.\n"
        "- 409 Conflict: the job already finished."
    ),
    response_description="The job after the cancel request.",
    responses={404: {"description": "Job not found."}, 409: {"description": "Job already finished."}},
)
async def cancel_import(job_id: str, context: PipelineContext = Depends(get_context)) -> ImportJob:
    """Cancel an import job."""
    try:
        return import_service.cancel_import_job(context, job_id)
    except JobNotFoundError as exc:
        raise HTTPException(404, "Job not found") from exc
    except InvalidTransitionError as exc:
        raise HTTPException(409, str(exc)) from exc


@router.get(
    "/health",
    summary="Health check",
    description="Simple health check endpoint. Returns status ok.",
    response_description="Status ok.",
    responses={200: {"description": "API is healthy.", "content": {"application/json": {"example": {"status": "ok"}}}}},
)
async def health() -> dict:
    """Health check endpoint."""
    return {"status": "ok"}
