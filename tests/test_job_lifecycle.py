"""Integration tests for the import job lifecycle, driven stage by stage."""

import base64
import io
from collections.abc import Callable
from typing import Any

import pytest
from pypdf import PdfReader, PdfWriter

from app.agents.base import BaseAgent
from app.core.context import PipelineContext, build_context
from app.core.db import Category
from app.core.errors import ErrorKind, InvalidTransitionError, StaleJobError
from app.core.models import AccountType, BankFormat, ExtractionResult, ImportJob, ImportJobStatus
from app.core.settings import Settings
from app.services.import_service import (
    UploadRejectedError,
    cancel_import_job,
    confirm_import_job,
    create_import_job,
    get_import_job,
)
from app.workers.job_runner import JobRunner

PNG_BYTES = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mP8z8BQDwAEhQGAhKmMIQAAAABJRU5ErkJggg=="
)
NEQUI_CSV = (
    b"Fecha,Hora,Concepto,Monto,Tipo de movimiento\n"
    b"15/01/2024,10:30,Pago QR Tienda D1,-25.000,Salida\n"
    b"16/01/2024,09:00,Recibiste de Juan,100.000,Entrada\n"
)


class ExplodingVisionAgent(BaseAgent):
    """Vision agent whose every call raises."""

    def extract_from_images(
        self,
        images: list[str],
        mime_type: str = "image/png",
        cancelled: Callable[[], bool] | None = None,
    ) -> ExtractionResult:
        """Raise an error nobody anticipates."""
        _ = cancelled
        msg = f"boom on {len(images)} {mime_type} image(s)"
        raise RuntimeError(msg)


def _drive(context: PipelineContext, job_id: str) -> list[ImportJob]:
    """Advance a job one stage at a time, returning every state it passed through."""
    runner = JobRunner(context)
    seen = [get_import_job(context, job_id)]
    while not seen[-1].is_terminal and seen[-1].status != ImportJobStatus.REVIEW:
        seen.append(runner.process_stage(job_id))
    return seen


def _encrypt(pdf: bytes, password: str) -> bytes:
    writer = PdfWriter(clone_from=PdfReader(io.BytesIO(pdf)))
    writer.encrypt(password)
    buffer = io.BytesIO()
    writer.write(buffer)
    return buffer.getvalue()


def _expect(condition: bool, message: str) -> None:
    if not condition:
        raise AssertionError(message)


def test_text_statement_reaches_review(context: PipelineContext, statement_pdf: bytes) -> None:
    """A text PDF walks every stage in order with progress that only goes up."""
    job = create_import_job(context, "user-1", statement_pdf, "extracto enero.pdf", "application/pdf")
    history = _drive(context, job.id)
    statuses = [state.status for state in history]
    _expect(
        statuses
        == [
            ImportJobStatus.PENDING,
            ImportJobStatus.PROCESSING,
            ImportJobStatus.PARSING,
            ImportJobStatus.CATEGORIZING,
            ImportJobStatus.REVIEW,
        ],
        f"Unexpected status path: {statuses}",
    )
    progress = [state.progress for state in history]
    _expect(progress == [0, 10, 40, 80, 100], f"Unexpected progress: {progress}")

    final = history[-1]
    _expect(final.result is not None, "REVIEW job must carry a result")
    _expect(final.bank_format == BankFormat.BANCOLOMBIA, f"Unexpected bank: {final.bank_format}")
    result = final.result
    _expect(len(result.accounts) == 1 and len(result.transactions) == 3, f"Unexpected result: {result}")
    account = result.accounts[0]
    _expect(account.account_type == AccountType.SAVINGS, f"Unexpected account: {account}")
    _expect(account.initial_balance == 1_000_000.0, f"Unexpected opening balance: {account.initial_balance}")
    _expect(all(txn.amount >= 0 for txn in result.transactions), "Amounts must be non-negative")
    _expect(result.confidence >= 90, f"Unexpected confidence: {result.confidence}")


def test_review_is_stable(context: PipelineContext, statement_pdf: bytes) -> None:
    """Processing a job that is already in REVIEW changes nothing."""
    job = create_import_job(context, "user-1", statement_pdf, "extracto.pdf", "application/pdf")
    review = JobRunner(context).run_job(job.id)
    _expect(review is not None and review.status == ImportJobStatus.REVIEW, f"Unexpected job: {review}")
    again = JobRunner(context).process_stage(job.id)
    _expect(again == review, "A job in REVIEW must not change when processed again")


def test_stale_transition_is_rejected(context: PipelineContext, statement_pdf: bytes) -> None:
    """Only one caller can move a job out of a given status."""
    job = create_import_job(context, "user-1", statement_pdf, "extracto.pdf", "application/pdf")
    JobRunner(context).process_stage(job.id)
    with pytest.raises(StaleJobError):
        context.repository.transition(job.id, ImportJobStatus.PENDING, ImportJobStatus.PROCESSING)
    with pytest.raises(InvalidTransitionError):
        context.repository.transition(job.id, ImportJobStatus.PROCESSING, ImportJobStatus.REVIEW)


def test_confirm_creates_rows_once(context: PipelineContext, statement_pdf: bytes) -> None:
    """Confirming writes the account and its transactions; a second confirm is refused."""
    with context.repository.Session() as session:
        session.add(Category(payee="EXITO CHAPINERO", category="MERCADO"))
        session.commit()
    job = create_import_job(context, "user-1", statement_pdf, "extracto.pdf", "application/pdf")
    review = JobRunner(context).run_job(job.id)
    categories = {txn.merchant: txn.category for txn in review.result.transactions}
    _expect(categories.get("EXITO CHAPINERO") == "MERCADO", f"Category not applied: {categories}")

    confirmed = confirm_import_job(context, job.id)
    _expect(
        (confirmed.accounts_created, confirmed.transactions_created) == (1, 3),
        f"Unexpected counts: {confirmed}",
    )
    _expect(get_import_job(context, job.id).status == ImportJobStatus.CONFIRMED, "Job should be CONFIRMED")
    with pytest.raises(InvalidTransitionError):
        confirm_import_job(context, job.id)


def test_confirm_outside_review_is_refused(context: PipelineContext, statement_pdf: bytes) -> None:
    """A job that has not reached REVIEW cannot be confirmed."""
    job = create_import_job(context, "user-1", statement_pdf, "extracto.pdf", "application/pdf")
    with pytest.raises(InvalidTransitionError):
        confirm_import_job(context, job.id)


def test_cancel_pending_and_running_jobs(context: PipelineContext, statement_pdf: bytes) -> None:
    """Idle jobs cancel at once; a running job stops at its next stage boundary."""
    pending = create_import_job(context, "user-1", statement_pdf, "a.pdf", "application/pdf", password="x")
    cancelled = cancel_import_job(context, pending.id)
    _expect(cancelled.status == ImportJobStatus.CANCELLED, f"Unexpected status: {cancelled.status}")
    _expect(context.secrets.get(pending.id) is None, "Password must be dropped on cancel")
    _expect(JobRunner(context).process_stage(pending.id).status == ImportJobStatus.CANCELLED, "Terminal is final")

    running = create_import_job(context, "user-1", statement_pdf, "b.pdf", "application/pdf")
    runner = JobRunner(context)
    runner.process_stage(running.id)
    flagged = cancel_import_job(context, running.id)
    _expect(
        flagged.status == ImportJobStatus.PROCESSING and flagged.cancel_requested,
        f"Running job should only be flagged: {flagged}",
    )
    stopped = runner.process_stage(running.id)
    _expect(stopped.status == ImportJobStatus.CANCELLED, f"Unexpected status: {stopped.status}")
    with pytest.raises(InvalidTransitionError):
        cancel_import_job(context, running.id)


def test_password_protected_statement(context: PipelineContext, statement_pdf: bytes) -> None:
    """The password unlocks the file and is forgotten afterwards; a wrong one fails the job."""
    protected = _encrypt(statement_pdf, "1234")
    good = create_import_job(context, "user-1", protected, "a.pdf", "application/pdf", password="1234")
    review = JobRunner(context).run_job(good.id)
    _expect(review.status == ImportJobStatus.REVIEW, f"Unexpected job: {review.status} {review.error_code}")
    _expect(context.secrets.get(good.id) is None, "Password must not outlive extraction")

    bad = create_import_job(context, "user-1", protected, "b.pdf", "application/pdf", password="0000")
    failed = JobRunner(context).run_job(bad.id)
    _expect(failed.status == ImportJobStatus.FAILED, f"Unexpected status: {failed.status}")
    _expect(failed.error_code == "PASSWORD_INCORRECT", f"Unexpected code: {failed.error_code}")
    _expect(failed.error.startswith("Contraseña incorrecta"), f"Unexpected message: {failed.error}")


def test_scanned_pdf_falls_back_to_vision(context: PipelineContext, vision_agent: Any, text_pdf: Any) -> None:
    """A PDF without a text layer is rendered and sent to the vision agent."""
    job = create_import_job(context, "user-1", text_pdf([]), "scan.pdf", "application/pdf")
    final = JobRunner(context).run_job(job.id)
    _expect(final.status == ImportJobStatus.REVIEW, f"Unexpected job: {final.status} {final.error_code}")
    _expect(len(vision_agent.calls) == 1 and len(vision_agent.calls[0]) == 1, f"Calls: {vision_agent.calls}")


def test_text_without_statement_vocabulary(context: PipelineContext, text_pdf: Any) -> None:
    """Readable text that is not a bank statement fails the job."""
    lines = [
        "Lorem ipsum dolor sit amet, consectetur adipiscing elit,",
        "sed do eiusmod tempor incididunt ut labore et dolore magna aliqua.",
    ]
    job = create_import_job(context, "user-1", text_pdf(lines), "lorem.pdf", "application/pdf")
    final = JobRunner(context).run_job(job.id)
    _expect(final.error_code == "NOT_A_STATEMENT", f"Unexpected job: {final.status} {final.error_code}")


def test_csv_statement(context: PipelineContext) -> None:
    """A CSV export is parsed with its own column mapping and issuer."""
    job = create_import_job(context, "user-1", NEQUI_CSV, "nequi.csv", "text/csv")
    final = JobRunner(context).run_job(job.id)
    _expect(final.status == ImportJobStatus.REVIEW, f"Unexpected job: {final.status} {final.error_code}")
    _expect(final.bank_format == BankFormat.NEQUI, f"Unexpected bank: {final.bank_format}")
    _expect(len(final.result.transactions) == 2, f"Unexpected transactions: {final.result.transactions}")


def test_missing_file_and_unsupported_type(context: PipelineContext) -> None:
    """A vanished upload and an unknown MIME type both fail with their own codes."""
    missing = context.repository.create("job-missing", "user-1", "imports/user-1/gone.pdf", "gone.pdf", "application/pdf")
    final = JobRunner(context).run_job(missing.id)
    _expect(final.error_code == "FILE_NOT_FOUND", f"Unexpected job: {final.status} {final.error_code}")

    context.file_service.save_file("imports/user-1/a.zip", b"PK\x03\x04", "application/zip")
    odd = context.repository.create("job-zip", "user-1", "imports/user-1/a.zip", "a.zip", "application/zip")
    final = JobRunner(context).run_job(odd.id)
    _expect(final.error_code == "UNSUPPORTED_FILE", f"Unexpected job: {final.status} {final.error_code}")


def test_upload_validation(context: PipelineContext) -> None:
    """Empty, oversized and unsupported uploads never create a job."""
    context.settings.max_file_size_bytes = 10
    for data, mime in [(b"", "application/pdf"), (b"x" * 11, "application/pdf"), (b"abc", "application/zip")]:
        with pytest.raises(UploadRejectedError):
            create_import_job(context, "user-1", data, "f", mime)


def test_image_with_low_confidence_reaches_review(settings: Settings, make_vision_agent: Any) -> None:
    """Low model confidence is a warning on a reviewable result, not a failure."""
    payload = {
        "accounts": [{"name": "Nequi", "accountType": "SAVINGS", "initialBalance": 0}],
        "transactions": [{"date": "2024-03-01", "description": "Pago QR", "amount": 5000, "type": "EXPENSE"}],
        "confidence": 40,
    }
    agent, _ = make_vision_agent([payload])
    context = build_context(settings, vision_agent=agent, start_workers=False)
    try:
        job = create_import_job(context, "user-1", PNG_BYTES, "captura.png", "image/png")
        final = JobRunner(context).run_job(job.id)
    finally:
        context.close()
    _expect(final.status == ImportJobStatus.REVIEW, f"Unexpected job: {final.status} {final.error_code}")
    _expect(final.result.confidence == 40, f"Unexpected confidence: {final.result.confidence}")
    _expect(any("Low confidence" in w for w in final.result.warnings), f"Warnings: {final.result.warnings}")


def test_vision_service_outage_fails_the_job(context: PipelineContext, vision_agent: Any) -> None:
    """A vision call that never succeeds fails the job as a service outage."""
    vision_agent.result = ExtractionResult(warnings=["Vision service unavailable"], failure_kind=ErrorKind.TRANSIENT)
    job = create_import_job(context, "user-1", PNG_BYTES, "captura.png", "image/png")
    final = JobRunner(context).run_job(job.id)
    _expect(final.error_code == "SERVICE_UNAVAILABLE", f"Unexpected job: {final.status} {final.error_code}")


def test_unexpected_error_fails_the_job(settings: Settings) -> None:
    """An exception nobody handles still leaves the job FAILED with a generic message."""
    context = build_context(settings, vision_agent=ExplodingVisionAgent(), start_workers=False)
    try:
        job = create_import_job(context, "user-1", PNG_BYTES, "captura.png", "image/png")
        final = JobRunner(context).run_job(job.id)
    finally:
        context.close()
    _expect(final.status == ImportJobStatus.FAILED, f"Unexpected status: {final.status}")
    _expect(final.error_code == "INTERNAL_ERROR", f"Unexpected code: {final.error_code}")


def test_cancel_in_review_drops_the_result(context: PipelineContext, statement_pdf: bytes) -> None:
    """Cancelling a reviewable job leaves no result behind and it can no longer be confirmed."""
    job = create_import_job(context, "user-1", statement_pdf, "extracto.pdf", "application/pdf")
    review = JobRunner(context).run_job(job.id)
    _expect(review.status == ImportJobStatus.REVIEW and review.result is not None, f"Unexpected job: {review}")

    cancelled = cancel_import_job(context, job.id)
    _expect(cancelled.status == ImportJobStatus.CANCELLED, f"Unexpected status: {cancelled.status}")
    _expect(cancelled.result is None, f"Cancelled job kept its result: {cancelled.result}")
    with pytest.raises(InvalidTransitionError):
        confirm_import_job(context, job.id)


def test_cancel_during_vision_call_discards_its_result(context: PipelineContext, vision_agent: Any) -> None:
    """A cancel that arrives while the model is reading the pages ends in CANCELLED, not REVIEW."""
    vision_agent.result = ExtractionResult(
        transactions=[{"date": "2024-03-01", "description": "Pago QR", "amount": 5000, "type": "EXPENSE"}],
        confidence=90,
    )
    job = create_import_job(context, "user-1", PNG_BYTES, "captura.png", "image/png")
    vision_agent.during_call = lambda: cancel_import_job(context, job.id)

    final = JobRunner(context).run_job(job.id)
    _expect(len(vision_agent.calls) == 1, f"Calls: {vision_agent.calls}")
    _expect(final.status == ImportJobStatus.CANCELLED, f"Unexpected status: {final.status}")
    _expect(final.result is None, f"Cancelled job kept a result: {final.result}")
    with pytest.raises(InvalidTransitionError):
        confirm_import_job(context, job.id)


def test_forward_move_of_a_flagged_job_lands_in_cancelled(context: PipelineContext, statement_pdf: bytes) -> None:
    """A cancel flag set between the worker's check and its update still wins over the move to REVIEW."""
    job = create_import_job(context, "user-1", statement_pdf, "extracto.pdf", "application/pdf")
    runner = JobRunner(context)
    for _ in range(3):
        runner.process_stage(job.id)
    _expect(get_import_job(context, job.id).status == ImportJobStatus.CATEGORIZING, "Job should be CATEGORIZING")

    context.repository.request_cancel(job.id)
    moved = context.repository.transition(
        job.id, ImportJobStatus.CATEGORIZING, ImportJobStatus.REVIEW, progress=100, result=ExtractionResult()
    )
    _expect(moved.status == ImportJobStatus.CANCELLED, f"Unexpected status: {moved.status}")
    _expect(moved.result is None and moved.progress == 80, f"Unexpected job: {moved}")


def test_flagged_review_job_cannot_be_confirmed(context: PipelineContext, statement_pdf: bytes) -> None:
    """A REVIEW job carrying a cancel flag is refused by confirm and cancelled by the worker."""
    job = create_import_job(context, "user-1", statement_pdf, "extracto.pdf", "application/pdf")
    JobRunner(context).run_job(job.id)
    context.repository.request_cancel(job.id)
    with pytest.raises(InvalidTransitionError):
        confirm_import_job(context, job.id)

    stopped = JobRunner(context).process_stage(job.id)
    _expect(stopped.status == ImportJobStatus.CANCELLED, f"Unexpected status: {stopped.status}")
    _expect(stopped.result is None, f"Cancelled job kept its result: {stopped.result}")
