"""Pydantic models for the statement import pipeline.

This module defines the enums and models shared by every pipeline stage: the raw records produced by the
parsers and the vision agent, the normalized accounts and transactions that reach human review, and the
import job itself together with its state machine tables.
"""

from datetime import date
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from app.core.errors import ErrorKind


class AccountType(str, Enum):
    """Closed set of account types."""

    SAVINGS = "SAVINGS"
    CHECKING = "CHECKING"
    CREDIT_CARD = "CREDIT_CARD"
    LOAN = "LOAN"
    CASH = "CASH"
    INVESTMENT = "INVESTMENT"
    OTHER = "OTHER"


DEBT_ACCOUNT_TYPES = frozenset({AccountType.CREDIT_CARD, AccountType.LOAN})


class TransactionType(str, Enum):
    """Direction of a transaction; amounts are always non-negative."""

    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    TRANSFER = "TRANSFER"


class BankFormat(str, Enum):
    """Known Colombian statement issuers."""

    BANCOLOMBIA = "BANCOLOMBIA"
    NEQUI = "NEQUI"
    DAVIVIENDA = "DAVIVIENDA"
    BBVA = "BBVA"
    BANCO_BOGOTA = "BANCO_BOGOTA"
    GENERIC = "GENERIC"


class ImportJobStatus(str, Enum):
    """Lifecycle states of an import job."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PARSING = "PARSING"
    CATEGORIZING = "CATEGORIZING"
    REVIEW = "REVIEW"
    CONFIRMED = "CONFIRMED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES = frozenset({ImportJobStatus.CONFIRMED, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED})

# Forward edges of the happy path; FAILED and CANCELLED are added for every non-terminal state below.
_FORWARD = {
    ImportJobStatus.PENDING: ImportJobStatus.PROCESSING,
    ImportJobStatus.PROCESSING: ImportJobStatus.PARSING,
    ImportJobStatus.PARSING: ImportJobStatus.CATEGORIZING,
    ImportJobStatus.CATEGORIZING: ImportJobStatus.REVIEW,
    ImportJobStatus.REVIEW: ImportJobStatus.CONFIRMED,
}

ALLOWED_TRANSITIONS: dict[ImportJobStatus, frozenset[ImportJobStatus]] = {
    status: frozenset({nxt, ImportJobStatus.FAILED, ImportJobStatus.CANCELLED}) for status, nxt in _FORWARD.items()
}

STAGE_PROGRESS: dict[ImportJobStatus, int] = {
    ImportJobStatus.PENDING: 0,
    ImportJobStatus.PROCESSING: 10,
    ImportJobStatus.PARSING: 40,
    ImportJobStatus.CATEGORIZING: 80,
    ImportJobStatus.REVIEW: 100,
    ImportJobStatus.CONFIRMED: 100,
}


class RawTransaction(BaseModel):
    """A transaction as emitted by a parser or the vision model, before normalization."""

    date: str | None = None
    description: str = ""
    amount: float | str | None = None
    type: str | None = None
    merchant: str | None = None
    category: str | None = None
    balance: float | None = None
    raw_data: dict[str, Any] | None = None


class StatementMetadata(BaseModel):
    """Header facts read from a statement. Only used to feed account detection."""

    account_number: str | None = None
    account_type: AccountType | None = None
    bank_name: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    previous_balance: float | None = None
    current_balance: float | None = None
    total_credits: float | None = None
    total_debits: float | None = None


class DetectedAccount(BaseModel):
    """An account proposed for creation, awaiting user confirmation."""

    name: str
    bank_name: str | None = None
    account_number_last4: str | None = None
    account_type: AccountType
    initial_balance: float = 0.0
    currency: str = "COP"
    suggested_color: str
    suggested_icon: str
    transaction_count: int = 0


class NormalizedTransaction(BaseModel):
    """A transaction ready for review. Direction lives only in ``type``."""

    date: date
    description: str
    amount: float = Field(ge=0)
    type: TransactionType
    merchant: str | None = None
    category: str | None = None
    balance: float | None = None
    raw_data: dict[str, Any] | None = None


class ExtractionResult(BaseModel):
    """Accounts and transactions extracted from one uploaded file."""

    accounts: list[DetectedAccount] = Field(default_factory=list)
    transactions: list[NormalizedTransaction] = Field(default_factory=list)
    confidence: int = Field(default=0, ge=0, le=100)
    warnings: list[str] = Field(default_factory=list)
    # Set by the vision agent when the external call failed; never persisted.
    failure_kind: ErrorKind | None = Field(default=None, exclude=True)


class ImportJob(BaseModel):
    """Pydantic model representing an import job and its current state."""

    id: str
    user_id: str
    file_key: str
    file_name: str
    mime_type: str
    file_size: int = 0
    status: ImportJobStatus = ImportJobStatus.PENDING
    progress: int = Field(default=0, ge=0, le=100)
    error: str | None = None
    error_code: str | None = None
    bank_format: BankFormat | None = None
    result: ExtractionResult | None = None
    cancel_requested: bool = False
    created_at: str
    updated_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the job can no longer change."""
        return self.status in TERMINAL_STATUSES


class ConfirmResult(BaseModel):
    """Counts of permanent rows written when an import is confirmed."""

    accounts_created: int
    transactions_created: int
