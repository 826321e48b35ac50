"""Import job operations offered to the surrounding application.

``create_import_job`` stores the upload and queues a PENDING job; ``get_import_job`` serves progress polling;
``confirm_import_job`` turns a reviewed result into permanent accounts and transactions; ``cancel_import_job``
aborts a job that has not finished.
"""

import uuid

from app.core.context import PipelineContext
from app.core.errors import InvalidTransitionError, JobNotFoundError, StaleJobError
from app.core.models import ConfirmResult, ImportJob, ImportJobStatus
from app.core.utils import get_logger
from app.services.file_service import generate_import_key

logger = get_logger("statement-import.service")

# Nothing is running for jobs in these states, so cancelling them needs no worker cooperation.
IDLE_STATUSES = (ImportJobStatus.PENDING, ImportJobStatus.REVIEW)


class UploadRejectedError(ValueError):
    """The upload failed validation before any job was created."""


def validate_upload(context: PipelineContext, file_bytes: bytes, mime_type: str) -> None:
    """Reject empty, oversized or unsupported uploads."""
    settings = context.settings
    if not file_bytes:
        msg = "El archivo está vacío."
        raise UploadRejectedError(msg)
    if len(file_bytes) > settings.max_file_size_bytes:
        limit_mb = settings.max_file_size_bytes // (1024 * 1024)
        msg = f"El archivo supera el tamaño máximo de {limit_mb} MB."
        raise UploadRejectedError(msg)
    if mime_type.lower() not in settings.allowed_mime_types:
        msg = "Tipo de archivo no soportado."
        raise UploadRejectedError(msg)


def create_import_job(  # noqa: PLR0913
    context: PipelineContext,
    user_id: str,
    file_bytes: bytes,
    file_name: str,
    mime_type: str,
    password: str | None = None,
) -> ImportJob:
    """Store the file, insert a PENDING job and queue it for processing.

    The password, if any, is only kept in memory until the extraction attempt.
    """
    validate_upload(context, file_bytes, mime_type)
    job_id = str(uuid.uuid4())
    file_key = generate_import_key(user_id, file_name)
    context.file_service.save_file(file_key, file_bytes, mime_type)
    job = context.repository.create(job_id, user_id, file_key, file_name, mime_type.lower(), len(file_bytes))
    if password:
        context.secrets.put(job_id, password)
    logger.info(f"Created import job {job_id} for user {user_id}: {file_name} ({len(file_bytes)} bytes)")
    if context.pool is not None:
        context.pool.submit(job_id)
    return job


def get_import_job(context: PipelineContext, job_id: str) -> ImportJob:
    """Return a job or raise ``JobNotFoundError``."""
    job = context.repository.get(job_id)
    if job is None:
        msg = f"Import job {job_id} not found"
        raise JobNotFoundError(msg)
    return job


def confirm_import_job(context: PipelineContext, job_id: str) -> ConfirmResult:
    """Commit the reviewed accounts and transactions of a job in REVIEW."""
    return context.repository.confirm(job_id)


def cancel_import_job(context: PipelineContext, job_id: str) -> ImportJob:
    """Cancel a job that has not reached a terminal state.

    Idle jobs move to CANCELLED at once; a job a worker is running is flagged and stops at its next stage
    boundary. Raises ``InvalidTransitionError`` for terminal jobs.
    """
    job = get_import_job(context, job_id)
    if job.is_terminal:
        msg = f"Cannot cancel import in {job.status.value} status."
        raise InvalidTransitionError(msg)
    job = context.repository.request_cancel(job_id)
    context.secrets.discard(job_id)
    if context.pool is not None:
        context.pool.discard(job_id)
    if job.status in IDLE_STATUSES:
        try:
            job = context.repository.transition(job_id, job.status, ImportJobStatus.CANCELLED)
        except StaleJobError:
            logger.info(f"Job {job_id} moved on before it could be cancelled directly; the worker will stop it")
            job = get_import_job(context, job_id)
    logger.info(f"Cancel requested for job {job_id} (status={job.status.value})")
    return job
