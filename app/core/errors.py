"""Error taxonomy and stage outcome types for the import pipeline.

Expected failure modes travel as data (``StageFailure``); exceptions are reserved for
faults the pipeline does not anticipate and for misuse of the job API.
"""

from dataclasses import dataclass, field
from enum import Enum


class ErrorKind(str, Enum):
    """How a failure is handled by the job state machine."""

    INPUT = "INPUT"
    TRANSIENT = "TRANSIENT"
    DATA_QUALITY = "DATA_QUALITY"
    INTERNAL = "INTERNAL"


class ErrorCode(str, Enum):
    """Machine-readable failure codes stored next to the user-facing message."""

    PASSWORD_REQUIRED = "PASSWORD_REQUIRED"
    PASSWORD_INCORRECT = "PASSWORD_INCORRECT"
    CORRUPT_DOCUMENT = "CORRUPT_DOCUMENT"
    NO_EXTRACTABLE_TEXT = "NO_EXTRACTABLE_TEXT"
    NOT_A_STATEMENT = "NOT_A_STATEMENT"
    UNSUPPORTED_FILE = "UNSUPPORTED_FILE"
    FILE_NOT_FOUND = "FILE_NOT_FOUND"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


USER_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.PASSWORD_REQUIRED: "Este archivo está protegido. Ingresa la contraseña para continuar.",
    ErrorCode.PASSWORD_INCORRECT: "Contraseña incorrecta. Por favor, verifica e intenta nuevamente.",
    ErrorCode.CORRUPT_DOCUMENT: "El archivo está corrupto o tiene un formato inválido.",
    ErrorCode.NO_EXTRACTABLE_TEXT: "No pudimos leer el texto del documento.",
    ErrorCode.NOT_A_STATEMENT: "El archivo no parece ser un extracto bancario.",
    ErrorCode.UNSUPPORTED_FILE: "Tipo de archivo no soportado.",
    ErrorCode.FILE_NOT_FOUND: "No encontramos el archivo subido. Por favor, súbelo de nuevo.",
    ErrorCode.SERVICE_UNAVAILABLE: "El servicio no está disponible en este momento. Intenta más tarde.",
    ErrorCode.INTERNAL_ERROR: "Ocurrió un error al procesar el archivo.",
}


@dataclass
class StageFailure:
    """A classified failure returned by a pipeline stage."""

    kind: ErrorKind
    code: ErrorCode
    detail: str = ""  # logged, never shown to the user

    @property
    def user_message(self) -> str:
        """Short localized message for the job's ``error`` field."""
        return USER_MESSAGES[self.code]


@dataclass
class StageSuccess:
    """Successful stage output plus any data-quality warnings."""

    payload: dict = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


StageOutcome = StageSuccess | StageFailure


class ImportJobError(Exception):
    """Base class for import job errors."""


class JobNotFoundError(ImportJobError):
    """The requested import job does not exist."""


class InvalidTransitionError(ImportJobError):
    """The requested status change is not an edge of the job state machine."""


class StaleJobError(ImportJobError):
    """The job's persisted status no longer matches what the caller observed."""


class TransientStorageError(ImportJobError):
    """Blob storage could not be reached; the operation may succeed if retried."""
