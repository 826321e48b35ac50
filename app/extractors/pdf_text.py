"""Document text extractor: text layer and page images of uploaded PDFs.

Failures the user can act on (missing or wrong password, corrupt file, no text layer) are returned as
``StageFailure`` values rather than raised, so the worker can record them on the job.
"""

import base64
import io
from dataclasses import dataclass, field
from typing import Any

import pdfplumber
from pdfminer.pdfdocument import PDFPasswordIncorrect
from pdfminer.psparser import PSException
from pdfplumber.utils.exceptions import MalformedPDFException, PdfminerException

from app.core.errors import ErrorCode, ErrorKind, StageFailure
from app.core.utils import get_logger

logger = get_logger("statement-import.pdf")

MIN_TEXT_LENGTH = 100


@dataclass
class TextExtraction:
    """Concatenated page text of a PDF and its document info dictionary."""

    text: str
    page_count: int
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class PageImages:
    """Base64 PNG renderings of the first pages of a PDF."""

    images: list[str]
    page_count: int

    @property
    def truncated(self) -> bool:
        """Whether pages were left out of the rendering."""
        return len(self.images) < self.page_count


def _classify(exc: Exception, password: str | None) -> StageFailure | None:
    """Map a pdfminer error to a user-facing failure, None if it is not one we expect."""
    cause = exc.args[0] if isinstance(exc, PdfminerException) and exc.args else exc
    if isinstance(cause, PDFPasswordIncorrect):
        code = ErrorCode.PASSWORD_INCORRECT if password else ErrorCode.PASSWORD_REQUIRED
        return StageFailure(ErrorKind.INPUT, code, f"pdfminer: {cause!r}")
    if isinstance(cause, PSException | MalformedPDFException):
        return StageFailure(ErrorKind.INPUT, ErrorCode.CORRUPT_DOCUMENT, f"pdfminer: {cause!r}")
    return None


def _open(data: bytes, password: str | None) -> pdfplumber.PDF:
    return pdfplumber.open(io.BytesIO(data), password=password or "")


def extract_text(
    data: bytes, password: str | None = None, min_text_length: int = MIN_TEXT_LENGTH
) -> TextExtraction | StageFailure:
    """Extract the text layer of a PDF.

    Returns a ``StageFailure`` with ``PASSWORD_REQUIRED``/``PASSWORD_INCORRECT`` for encrypted files,
    ``CORRUPT_DOCUMENT`` when the bytes are not a readable PDF, and ``NO_EXTRACTABLE_TEXT`` when fewer than
    ``min_text_length`` characters come out (a scanned statement).
    """
    try:
        with _open(data, password) as pdf:
            pages = [page.extract_text() or "" for page in pdf.pages]
            info = dict(pdf.metadata or {})
    except (PdfminerException, MalformedPDFException, PSException) as exc:
        failure = _classify(exc, password)
        if failure is None:
            raise
        logger.warning(f"PDF text extraction failed: {failure.code.value} ({failure.detail})")
        return failure

    text = "\n".join(pages).strip()
    if len(text) < min_text_length:
        logger.info(f"PDF has {len(text)} characters of text across {len(pages)} pages; treating as scanned")
        return StageFailure(
            ErrorKind.INPUT,
            ErrorCode.NO_EXTRACTABLE_TEXT,
            f"{len(text)} characters extracted, {min_text_length} required",
        )
    logger.info(f"Extracted {len(text)} characters from {len(pages)} pages")
    return TextExtraction(text=text, page_count=len(pages), metadata=info)


def render_page_images(
    data: bytes, password: str | None = None, max_pages: int = 5, resolution: int = 150
) -> PageImages | StageFailure:
    """Render up to ``max_pages`` pages of a PDF as base64-encoded PNG images."""
    images = []
    try:
        with _open(data, password) as pdf:
            page_count = len(pdf.pages)
            for page in pdf.pages[:max_pages]:
                buffer = io.BytesIO()
                page.to_image(resolution=resolution).original.save(buffer, format="PNG")
                images.append(base64.b64encode(buffer.getvalue()).decode("ascii"))
    except (PdfminerException, MalformedPDFException, PSException) as exc:
        failure = _classify(exc, password)
        if failure is None:
            raise
        return failure
    logger.info(f"Rendered {len(images)} of {page_count} pages at {resolution} dpi")
    return PageImages(images=images, page_count=page_count)
