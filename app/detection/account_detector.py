"""Account detection and transaction normalization.

Turns parser or vision output into the reviewable shape: one ``DetectedAccount`` per statement and a clean,
deduplicated list of ``NormalizedTransaction`` whose amounts are non-negative magnitudes.
"""

import re
from dataclasses import dataclass
from datetime import date

from app.core.models import (
    DEBT_ACCOUNT_TYPES,
    AccountType,
    BankFormat,
    DetectedAccount,
    NormalizedTransaction,
    RawTransaction,
    StatementMetadata,
    TransactionType,
)
from app.core.utils import get_logger
from app.detection.banks import KNOWN_ISSUERS, issuer_by_format, issuer_by_name, normalize_header
from app.parsers.formats import fold, parse_amount, parse_statement_date

logger = get_logger("statement-import.detection")

UNKNOWN_BANK = "Banco Desconocido"
DEFAULT_ACCOUNT_NAME = "Cuenta Importada"
GENERIC_CONFIDENCE = 0.3
NAMED_BANK_CONFIDENCE = 0.9
MIN_HEADER_SCORE = 0.4

# Display hints depend only on the account type so repeated imports of an account look the same.
TYPE_DISPLAY: dict[AccountType, tuple[str, str, str]] = {
    AccountType.SAVINGS: ("Ahorros", "#10b981", "PiggyBank"),
    AccountType.CHECKING: ("Corriente", "#3b82f6", "Building"),
    AccountType.CREDIT_CARD: ("Tarjeta", "#ef4444", "CreditCard"),
    AccountType.LOAN: ("Préstamo", "#f59e0b", "TrendingUp"),
    AccountType.CASH: ("Efectivo", "#22c55e", "DollarSign"),
    AccountType.INVESTMENT: ("Inversión", "#8b5cf6", "Wallet"),
    AccountType.OTHER: ("Cuenta", "#6366f1", "Wallet"),
}

ACCOUNT_NUMBER_FINGERPRINTS = [
    (re.compile(r"^3\d{9}$"), BankFormat.NEQUI, 0.5),
    (re.compile(r"^\d{11}$"), BankFormat.BANCOLOMBIA, 0.4),
]

CREDIT_CARD_PATTERNS = [re.compile(p) for p in (r"PAGO.*TARJETA", r"CUOTA", r"INTERES.*MORA", r"AVANCE")]
SAVINGS_PATTERNS = [re.compile(p) for p in (r"INTERES.*AHORRO", r"RENDIMIENTO", r"GMF.*EXENTO")]


@dataclass
class BankDetection:
    """Best-matching issuer and how sure the match is (0-1)."""

    format: BankFormat
    confidence: float


def _header_score(patterns: tuple[str, ...], min_columns: int, headers: list[str]) -> float:
    normalized = [normalize_header(h) for h in headers]
    matched = sum(1 for p in patterns if any(re.search(p, h) for h in normalized))
    header_score = matched / len(patterns)
    column_score = 1.0 if len(headers) >= min_columns else 0.0
    return header_score * 0.7 + column_score * 0.3


def detect_bank_format(metadata: StatementMetadata, headers: list[str] | None = None) -> BankDetection:
    """Match statement fingerprints against the table of known issuers.

    Column headers (CSV exports) are scored first, then the bank name read from the statement header, then
    the shape of the account number. Anything unmatched is GENERIC.
    """
    if headers:
        best: BankDetection | None = None
        for issuer in KNOWN_ISSUERS:
            if not issuer.header_patterns:
                continue
            score = _header_score(issuer.header_patterns, issuer.min_columns, headers)
            if best is None or score > best.confidence:
                best = BankDetection(issuer.format, round(score, 2))
        if best and best.confidence >= MIN_HEADER_SCORE:
            return best
    if metadata.bank_name:
        issuer = issuer_by_name(fold(metadata.bank_name))
        if issuer:
            return BankDetection(issuer.format, NAMED_BANK_CONFIDENCE)
    if metadata.account_number:
        for pattern, bank_format, confidence in ACCOUNT_NUMBER_FINGERPRINTS:
            if pattern.match(metadata.account_number):
                return BankDetection(bank_format, confidence)
    return BankDetection(BankFormat.GENERIC, GENERIC_CONFIDENCE)


def infer_account_type(transactions: list[NormalizedTransaction]) -> AccountType:
    """Guess the account type from transaction wording when the statement header does not say."""
    if not transactions:
        return AccountType.OTHER
    descriptions = [fold(t.description) for t in transactions]
    if any(p.search(d) for p in CREDIT_CARD_PATTERNS for d in descriptions):
        return AccountType.CREDIT_CARD
    income = sum(1 for t in transactions if t.type == TransactionType.INCOME)
    expense = sum(1 for t in transactions if t.type == TransactionType.EXPENSE)
    if any(p.search(d) for p in SAVINGS_PATTERNS for d in descriptions) or income > expense * 2:
        return AccountType.SAVINGS
    return AccountType.CHECKING


def signed_amount(txn: NormalizedTransaction) -> float:
    """Effect of a transaction on the account balance."""
    return txn.amount if txn.type == TransactionType.INCOME else -txn.amount


def initial_balance(metadata: StatementMetadata, transactions: list[NormalizedTransaction]) -> float:
    """Opening balance: stated, else worked back from the closing balance, else 0."""
    if metadata.previous_balance is not None:
        return metadata.previous_balance
    closing = metadata.current_balance
    if closing is None and transactions:
        last = max(enumerate(transactions), key=lambda pair: (pair[1].date, pair[0]))[1]
        closing = last.balance
    if closing is None:
        return 0.0
    return round(closing - sum(signed_amount(t) for t in transactions), 2)


def build_account(  # noqa: PLR0913
    account_type: AccountType,
    *,
    name: str | None = None,
    bank_name: str | None = None,
    last4: str | None = None,
    balance: float = 0.0,
    currency: str = "COP",
    transaction_count: int = 0,
) -> DetectedAccount:
    """Assemble a ``DetectedAccount`` with the sign convention and display hints of its type."""
    type_name, color, icon = TYPE_DISPLAY[account_type]
    if not name:
        name = f"{bank_name or UNKNOWN_BANK} {type_name}"
        if last4:
            name = f"{name} ****{last4}"
    if account_type in DEBT_ACCOUNT_TYPES:
        balance = -abs(balance)
    return DetectedAccount(
        name=name,
        bank_name=bank_name,
        account_number_last4=last4,
        account_type=account_type,
        initial_balance=balance,
        currency=currency or "COP",
        suggested_color=color,
        suggested_icon=icon,
        transaction_count=transaction_count,
    )


def detect(
    metadata: StatementMetadata,
    transactions: list[NormalizedTransaction],
    bank_format: BankFormat | None = None,
) -> DetectedAccount:
    """Build the account a statement describes; unmatched input still yields a generic account."""
    account_type = metadata.account_type or infer_account_type(transactions)
    bank_name = metadata.bank_name
    if bank_name is None and bank_format is not None:
        issuer = issuer_by_format(bank_format)
        bank_name = issuer.display_name if issuer else None
    last4 = metadata.account_number[-4:] if metadata.account_number else None
    account = build_account(
        account_type,
        bank_name=bank_name,
        last4=last4,
        balance=initial_balance(metadata, transactions),
        transaction_count=len(transactions),
    )
    logger.info(f"Detected account '{account.name}' ({account.account_type.value}), {len(transactions)} transactions")
    return account


def default_account(transaction_count: int) -> DetectedAccount:
    """Placeholder account for transactions that arrived without one."""
    return build_account(AccountType.OTHER, name=DEFAULT_ACCOUNT_NAME, transaction_count=transaction_count)


def normalize(
    raw_transactions: list[RawTransaction], today: date | None = None
) -> tuple[list[NormalizedTransaction], list[str]]:
    """Parse dates and amounts, move sign into ``type`` and drop exact duplicates.

    Two records are duplicates only when date, amount and description all match; the first one is kept.
    Records whose date or amount cannot be read are dropped with a warning.
    """
    today = today or date.today()  # noqa: DTZ011
    normalized: list[NormalizedTransaction] = []
    warnings: list[str] = []
    seen: set[tuple[date, float, str]] = set()
    future = 0
    for index, raw in enumerate(raw_transactions, start=1):
        txn_date = parse_statement_date(raw.date)
        if txn_date is None:
            warnings.append(f"Transaction {index}: unreadable date {raw.date!r}, skipped")
            continue
        signed = parse_amount(raw.amount)
        if signed is None:
            warnings.append(f"Transaction {index}: unreadable amount {raw.amount!r}, skipped")
            continue
        amount = abs(signed)
        description = " ".join((raw.description or "").split()) or "Sin descripción"
        key = (txn_date, amount, description)
        if key in seen:
            warnings.append(f"Duplicate transaction dropped: {txn_date.isoformat()} {amount:.2f} {description}")
            continue
        seen.add(key)
        raw_type = (raw.type or "").strip().upper()
        if raw_type in TransactionType.__members__:
            txn_type = TransactionType(raw_type)
        else:
            txn_type = TransactionType.EXPENSE if signed < 0 else TransactionType.INCOME
        if txn_date > today:
            future += 1
        normalized.append(
            NormalizedTransaction(
                date=txn_date,
                description=description,
                amount=amount,
                type=txn_type,
                merchant=raw.merchant or None,
                category=raw.category or None,
                balance=raw.balance,
                raw_data=raw.raw_data,
            )
        )
    if future:
        warnings.append(f"{future} transaction(s) dated in the future")
    return normalized, warnings


def reconcile(
    metadata: StatementMetadata, transactions: list[NormalizedTransaction], tolerance: float = 1.0
) -> list[str]:
    """Compare transaction sums with the totals printed on the statement. Mismatches are warnings only."""
    warnings = []
    credits = sum(t.amount for t in transactions if t.type == TransactionType.INCOME)
    debits = sum(t.amount for t in transactions if t.type != TransactionType.INCOME)
    if metadata.total_credits is not None and abs(credits - metadata.total_credits) > tolerance:
        warnings.append(f"Credits add up to {credits:,.2f} but the statement reports {metadata.total_credits:,.2f}")
    if metadata.total_debits is not None and abs(debits - metadata.total_debits) > tolerance:
        warnings.append(f"Debits add up to {debits:,.2f} but the statement reports {metadata.total_debits:,.2f}")
    if metadata.previous_balance is not None and metadata.current_balance is not None:
        expected = metadata.previous_balance + credits - debits
        if abs(expected - metadata.current_balance) > tolerance:
            warnings.append(
                f"Opening balance plus movements gives {expected:,.2f} "
                f"but the closing balance is {metadata.current_balance:,.2f}"
            )
    return warnings


def estimate_confidence(
    metadata: StatementMetadata,
    transactions: list[NormalizedTransaction],
    detection: BankDetection,
    reconciliation_warnings: int = 0,
) -> int:
    """Heuristic 0-100 score of how far a reviewer can trust a text-parsed statement."""
    if not transactions:
        return 0
    score = 40.0
    score += 25 * detection.confidence
    if metadata.account_number:
        score += 10
    if metadata.start_date and metadata.end_date:
        score += 5
    if metadata.previous_balance is not None or metadata.current_balance is not None:
        score += 10
    if any(t.balance is not None for t in transactions):
        score += 10
    score -= 10 * reconciliation_warnings
    return max(0, min(100, round(score)))
