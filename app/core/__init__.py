"""Core package: provides models, database helpers, settings, errors and shared utilities."""

from .errors import ErrorCode, ErrorKind, StageFailure, StageSuccess  # noqa: F401
from .models import ExtractionResult, ImportJob, ImportJobStatus  # noqa: F401
from .settings import Settings  # noqa: F401
from .utils import get_logger  # noqa: F401
