"""Background job orchestration for statement imports.

``JobRunner.process_stage`` performs exactly the work of a job's persisted status and advances it one step
with a compare-and-set transition, so re-running it after a crash is safe. ``JobRunner.run_job`` drives a job
through its stages and is the only place an unexpected exception turns into a FAILED job.
"""

import base64
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

from app.core.context import PipelineContext
from app.core.errors import (
    ErrorCode,
    ErrorKind,
    ImportJobError,
    JobNotFoundError,
    StageFailure,
    StageOutcome,
    StageSuccess,
    StaleJobError,
    TransientStorageError,
)
from app.core.models import (
    STAGE_PROGRESS,
    DetectedAccount,
    ExtractionResult,
    ImportJob,
    ImportJobStatus,
    RawTransaction,
    StatementMetadata,
)
from app.core.utils import get_logger
from app.detection.account_detector import (
    default_account,
    detect,
    detect_bank_format,
    estimate_confidence,
    normalize,
    reconcile,
)
from app.extractors.pdf_text import PageImages, extract_text, render_page_images
from app.parsers import statement_parser
from app.parsers.csv_parser import CsvParseError, parse_csv

logger = get_logger("statement-import.worker")

PDF_MIME_TYPES = {"application/pdf"}
CSV_MIME_TYPES = {"text/csv", "application/vnd.ms-excel"}


def _vision_outcome(result: ExtractionResult, metadata: StatementMetadata, warnings: list[str]) -> StageOutcome:
    """Turn a vision result into a stage outcome; call failures become classified failures."""
    if result.failure_kind == ErrorKind.TRANSIENT:
        return StageFailure(ErrorKind.TRANSIENT, ErrorCode.SERVICE_UNAVAILABLE, "; ".join(result.warnings))
    if result.failure_kind == ErrorKind.INTERNAL:
        return StageFailure(ErrorKind.INTERNAL, ErrorCode.INTERNAL_ERROR, "; ".join(result.warnings))
    payload = {
        "source": "vision",
        "transactions": [txn.model_dump(mode="json") for txn in result.transactions],
        "accounts": [account.model_dump(mode="json") for account in result.accounts],
        "confidence": result.confidence,
        "metadata": metadata.model_dump(mode="json"),
    }
    return StageSuccess(payload=payload, warnings=[*warnings, *result.warnings])


class JobRunner:
    """JobRunner advances import jobs through the pipeline stages."""

    def __init__(self, context: PipelineContext) -> None:
        """Initialize JobRunner with the pipeline context."""
        self.context = context
        self.repository = context.repository
        self.settings = context.settings

    def process_stage(self, job_id: str) -> ImportJob:
        """Do the work of the job's persisted status and move it to the next one.

        Jobs in a terminal state, or in REVIEW without a pending cancel, are returned unchanged.
        """
        job = self.repository.get(job_id)
        if job is None:
            msg = f"Import job {job_id} not found"
            raise JobNotFoundError(msg)
        if job.is_terminal:
            return job
        if job.cancel_requested:
            return self._cancel(job)
        if job.status == ImportJobStatus.REVIEW:
            return job
        handlers = {
            ImportJobStatus.PENDING: self._claim,
            ImportJobStatus.PROCESSING: self._extract,
            ImportJobStatus.PARSING: self._parse,
            ImportJobStatus.CATEGORIZING: self._categorize,
        }
        try:
            return handlers[job.status](job)
        except StaleJobError as exc:
            logger.warning(f"Job {job_id}: {exc}; leaving it to its current owner")
            return self.repository.get(job_id) or job

    def run_job(self, job_id: str) -> ImportJob | None:
        """Run every remaining stage of a job, stopping in REVIEW, in a terminal state, or when it stalls."""
        logger.info(f"Starting job: {job_id}")
        try:
            job = self.repository.get(job_id)
            while job is not None and not job.is_terminal and job.status != ImportJobStatus.REVIEW:
                before = job.status
                job = self.process_stage(job_id)
                if job.status == before:
                    break
        except Exception:
            logger.exception(f"Error processing job {job_id}")
            job = self._fail_unexpected(job_id)
        finally:
            self.context.secrets.discard(job_id)
        if job is not None:
            logger.info(f"Job {job_id} stopped in {job.status.value} (progress={job.progress})")
        return job

    def _advance(self, job: ImportJob, new_status: ImportJobStatus, **fields: Any) -> ImportJob:
        if self._cancel_requested(job.id):
            return self._cancel(job)
        return self.repository.transition(
            job.id, job.status, new_status, progress=STAGE_PROGRESS[new_status], **fields
        )

    def _cancel_requested(self, job_id: str) -> bool:
        current = self.repository.get(job_id)
        return bool(current and current.cancel_requested)

    def _cancel(self, job: ImportJob) -> ImportJob:
        self.context.secrets.discard(job.id)
        logger.info(f"Job {job.id}: cancellation requested, stopping in {job.status.value}")
        return self.repository.transition(job.id, job.status, ImportJobStatus.CANCELLED)

    def _fail(self, job: ImportJob, failure: StageFailure) -> ImportJob:
        if self._cancel_requested(job.id):
            return self._cancel(job)
        logger.error(f"Job {job.id} failed: {failure.kind.value}/{failure.code.value} ({failure.detail})")
        return self.repository.transition(
            job.id,
            job.status,
            ImportJobStatus.FAILED,
            error=failure.user_message,
            error_code=failure.code.value,
        )

    def _fail_unexpected(self, job_id: str) -> ImportJob | None:
        job = self.repository.get(job_id)
        if job is None or job.is_terminal:
            return job
        failure = StageFailure(ErrorKind.INTERNAL, ErrorCode.INTERNAL_ERROR, "unexpected error, see traceback")
        try:
            return self._fail(job, failure)
        except ImportJobError:
            logger.exception(f"Could not mark job {job_id} as failed")
            return self.repository.get(job_id)

    # Stages

    def _claim(self, job: ImportJob) -> ImportJob:
        return self._advance(job, ImportJobStatus.PROCESSING)

    def _extract(self, job: ImportJob) -> ImportJob:
        try:
            data = self.context.file_service.get_file(job.file_key)
        except FileNotFoundError:
            return self._fail(job, StageFailure(ErrorKind.INPUT, ErrorCode.FILE_NOT_FOUND, job.file_key))
        except TransientStorageError as exc:
            return self._fail(job, StageFailure(ErrorKind.TRANSIENT, ErrorCode.SERVICE_UNAVAILABLE, str(exc)))
        logger.info(f"Job {job.id}: fetched {len(data)} bytes ({job.mime_type}) from {job.file_key}")

        try:
            outcome = self._extract_candidate(job, data)
        finally:
            self.context.secrets.discard(job.id)
        if isinstance(outcome, StageFailure):
            return self._fail(job, outcome)
        stage_data = {**outcome.payload, "warnings": outcome.warnings}
        return self._advance(job, ImportJobStatus.PARSING, stage_data=stage_data)

    def _extract_candidate(self, job: ImportJob, data: bytes) -> StageOutcome:
        mime_type = job.mime_type.lower()
        if mime_type in PDF_MIME_TYPES:
            return self._extract_pdf(job, data)
        if mime_type in CSV_MIME_TYPES:
            try:
                parsed = parse_csv(data)
            except CsvParseError as exc:
                return StageFailure(ErrorKind.INPUT, ErrorCode.CORRUPT_DOCUMENT, str(exc))
            return StageSuccess(payload=self._parsed_payload("csv", parsed), warnings=parsed.warnings)
        if mime_type.startswith("image/"):
            image = base64.b64encode(data).decode("ascii")
            result = self.context.vision_agent.extract_from_images(
                [image], mime_type=mime_type, cancelled=lambda: self._cancel_requested(job.id)
            )
            return _vision_outcome(result, StatementMetadata(), [])
        return StageFailure(ErrorKind.INPUT, ErrorCode.UNSUPPORTED_FILE, mime_type)

    def _extract_pdf(self, job: ImportJob, data: bytes) -> StageOutcome:
        password = self.context.secrets.get(job.id)
        text = extract_text(data, password, self.settings.min_text_length)
        if isinstance(text, StageFailure):
            if text.code != ErrorCode.NO_EXTRACTABLE_TEXT:
                return text
            logger.info(f"Job {job.id}: no text layer, falling back to vision")
            return self._pdf_vision(job, data, password, StatementMetadata(), [])
        logger.info(f"Job {job.id}: text layer of {text.page_count} page(s), producer={text.metadata.get('Producer')}")
        parsed = statement_parser.parse(text.text)
        if not parsed.has_statement_content:
            return StageFailure(ErrorKind.INPUT, ErrorCode.NOT_A_STATEMENT, "no statement keywords in text")
        if not parsed.transactions:
            logger.info(f"Job {job.id}: text parser found no transactions, falling back to vision")
            warnings = [*parsed.warnings, "No transactions found in the text layer; read the pages with vision"]
            return self._pdf_vision(job, data, password, parsed.metadata, warnings)
        return StageSuccess(payload=self._parsed_payload("text", parsed), warnings=parsed.warnings)

    def _pdf_vision(
        self, job: ImportJob, data: bytes, password: str | None, metadata: StatementMetadata, warnings: list[str]
    ) -> StageOutcome:
        pages = render_page_images(
            data, password, self.settings.vision_max_pages, self.settings.vision_render_resolution
        )
        if isinstance(pages, StageFailure):
            return pages
        if not isinstance(pages, PageImages) or not pages.images:
            return StageFailure(ErrorKind.INPUT, ErrorCode.NO_EXTRACTABLE_TEXT, "PDF has no pages to render")
        if pages.truncated:
            warnings = [
                *warnings,
                f"Only the first {len(pages.images)} of {pages.page_count} pages were read",
            ]
        result = self.context.vision_agent.extract_from_images(
            pages.images, mime_type="image/png", cancelled=lambda: self._cancel_requested(job.id)
        )
        return _vision_outcome(result, metadata, warnings)

    @staticmethod
    def _parsed_payload(source: str, parsed: statement_parser.ParsedStatement) -> dict[str, Any]:
        return {
            "source": source,
            "transactions": [txn.model_dump(mode="json") for txn in parsed.transactions],
            "metadata": parsed.metadata.model_dump(mode="json"),
            "headers": parsed.headers,
        }

    def _parse(self, job: ImportJob) -> ImportJob:
        stage = self.repository.get_stage_data(job.id)
        raw = [RawTransaction.model_validate(item) for item in stage.get("transactions", [])]
        metadata = StatementMetadata.model_validate(stage.get("metadata") or {})
        transactions, normalize_warnings = normalize(raw)
        warnings = [*stage.get("warnings", []), *normalize_warnings]
        detection = detect_bank_format(metadata, stage.get("headers"))

        if stage.get("source") == "vision":
            accounts = [DetectedAccount.model_validate(item) for item in stage.get("accounts", [])]
            if not accounts and transactions:
                accounts = [default_account(len(transactions))]
            confidence = int(stage.get("confidence") or 0)
        else:
            reconciliation = reconcile(metadata, transactions, self.settings.reconciliation_tolerance)
            warnings.extend(reconciliation)
            accounts = [detect(metadata, transactions, detection.format)]
            confidence = estimate_confidence(metadata, transactions, detection, len(reconciliation))
            if not transactions:
                warnings.append("No transactions found in the statement")

        draft = ExtractionResult(accounts=accounts, transactions=transactions, confidence=confidence, warnings=warnings)
        logger.info(
            f"Job {job.id}: {len(transactions)} transactions, bank={detection.format.value} "
            f"({detection.confidence:.2f}), confidence={confidence}, {len(warnings)} warnings"
        )
        return self._advance(
            job,
            ImportJobStatus.CATEGORIZING,
            stage_data={"result": draft.model_dump(mode="json")},
            bank_format=detection.format.value,
        )

    def _categorize(self, job: ImportJob) -> ImportJob:
        stage = self.repository.get_stage_data(job.id)
        result = ExtractionResult.model_validate(stage.get("result") or {})
        for txn in result.transactions:
            if txn.category:
                continue
            payee = txn.merchant or txn.description
            category = self.repository.lookup_category(payee)
            if category:
                logger.info(f"Category for payee '{payee}' found in DB: '{category}'")
                txn.category = category
        return self._advance(job, ImportJobStatus.REVIEW, stage_data={}, result=result)


class WorkerPool:
    """In-process stand-in for the job queue: a thread pool running ``JobRunner.run_job``."""

    def __init__(self, context: PipelineContext, max_workers: int) -> None:
        """Initialize the pool with a runner over the given context."""
        self.runner = JobRunner(context)
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="import-worker")
        self._futures: dict[str, Future] = {}
        self._lock = threading.Lock()

    def submit(self, job_id: str) -> Future:
        """Queue a job for processing."""
        future = self.executor.submit(self.runner.run_job, job_id)
        with self._lock:
            self._futures[job_id] = future
        future.add_done_callback(lambda _done, jid=job_id: self._forget(jid))
        return future

    def discard(self, job_id: str) -> bool:
        """Drop a job that has not started yet; returns whether it was removed from the queue."""
        with self._lock:
            future = self._futures.pop(job_id, None)
        return bool(future and future.cancel())

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._futures.pop(job_id, None)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting jobs and drop the ones still queued."""
        self.executor.shutdown(wait=wait, cancel_futures=True)
