"""Heuristic parser for the text layer of Colombian bank statements.

The parser works line by line. Header lines near the top feed ``StatementMetadata`` (account number and type,
issuer, period, opening/closing balances and totals). A transaction line starts with a day/month date; its
trailing run of amount tokens holds the movement and, when the statement has a balance column, the running
balance. Everything between the date and the amounts is the description.

Direction is decided from structure before wording: an explicit sign, a debit/credit column split, or the
change in running balance all outrank description keywords.
"""

import re
from dataclasses import dataclass, field
from datetime import date

from app.core.models import AccountType, RawTransaction, StatementMetadata, TransactionType
from app.core.utils import get_logger
from app.detection.banks import issuer_by_name
from app.parsers.formats import (
    extract_lines,
    extract_merchant,
    fold,
    is_amount_token,
    parse_amount,
    parse_statement_date,
)

logger = get_logger("statement-import.parser")

STATEMENT_KEYWORDS = [
    "FECHA",
    "DESCRIPCION",
    "VALOR",
    "SALDO",
    "ABONO",
    "CARGO",
    "DEBITO",
    "CREDITO",
    "TRANSACCION",
    "EXTRACTO",
    "ESTADO DE CUENTA",
]

HEADER_SCAN_LINES = 100
BALANCE_TOLERANCE = 1.0
MAX_TRAILING_AMOUNTS = 3

LINE_DATE_RE = re.compile(r"^(\d{1,2})[/-](\d{1,2})(?:[/-](\d{4}|\d{2}))?\s+(.*)$")
ISO_LINE_DATE_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})\s+(.*)$")
ACCOUNT_NUMBER_RE = re.compile(r"(\d[\d -]{6,24}\d)")
PERIOD_RE = re.compile(
    r"(?:DESDE|DEL|PERIODO)\W*(\d{4}[/-]\d{1,2}[/-]\d{1,2}|\d{1,2}[/-]\d{1,2}[/-]\d{4})"
    r".*?(?:HASTA|AL|-)\W*(\d{4}[/-]\d{1,2}[/-]\d{1,2}|\d{1,2}[/-]\d{1,2}[/-]\d{4})"
)
YEAR_HINT_RES = [
    re.compile(r"(\d{4})/\d{1,2}/\d{1,2}"),
    re.compile(r"\d{1,2}/\d{1,2}/(\d{4})"),
    re.compile(r"(?:HASTA|DESDE|CORTE).*?(\d{4})"),
]

SUMMARY_FIELDS = {
    "previous_balance": ("SALDO ANTERIOR", "SALDO INICIAL"),
    "current_balance": ("SALDO ACTUAL", "SALDO FINAL", "NUEVO SALDO", "SALDO A LA FECHA"),
    "total_credits": ("TOTAL ABONOS", "TOTAL CREDITOS", "MAS CREDITOS", "TOTAL CONSIGNACIONES"),
    "total_debits": ("TOTAL CARGOS", "TOTAL DEBITOS", "MENOS DEBITOS", "TOTAL RETIROS"),
}

INCOME_KEYWORDS = [
    "ABONO",
    "CONSIGNACION",
    "DEPOSITO",
    "TRANSF DE",
    "TRANSFERENCIA DE",
    "RECIBIDA",
    "NOMINA",
    "INTERESES",
    "RENDIMIENTO",
    "DEVOLUCION",
]
EXPENSE_KEYWORDS = [
    "COMPRA",
    "PAGO",
    "RETIRO",
    "CUOTA",
    "COMISION",
    "CUOTA DE MANEJO",
    "GMF",
    "4X1000",
    "IMPUESTO",
    "IVA",
    "CARGO",
]
TRANSFER_KEYWORDS = ["TRASLADO", "TRANSFERENCIA A", "TRANSF A"]


@dataclass
class ColumnLayout:
    """Which amount columns the statement's table header announces."""

    has_balance: bool = False
    has_split: bool = False
    found: bool = False


@dataclass
class ParsedStatement:
    """Raw transactions and header facts read from one statement's text."""

    transactions: list[RawTransaction] = field(default_factory=list)
    metadata: StatementMetadata = field(default_factory=StatementMetadata)
    warnings: list[str] = field(default_factory=list)
    has_statement_content: bool = False
    headers: list[str] = field(default_factory=list)


def has_transaction_data(text: str) -> bool:
    """Whether the text carries any of the Spanish column headers a statement has."""
    folded = fold(text)
    return any(keyword in folded for keyword in STATEMENT_KEYWORDS)


def _amounts_on(line: str) -> list[float]:
    values = []
    for token in line.replace("$ ", "$").split():
        if is_amount_token(token):
            value = parse_amount(token)
            if value is not None:
                values.append(value)
    return values


def _summary_value(lines: list[str], index: int, keyword: str) -> float | None:
    """Value of a summary field: the last amount after the keyword, or the first amount on the next line."""
    folded = fold(lines[index])
    tail = lines[index][folded.find(keyword) + len(keyword) :]
    same_line = _amounts_on(tail)
    if same_line:
        return same_line[-1]
    if index + 1 < len(lines):
        next_line = _amounts_on(lines[index + 1])
        if next_line:
            return next_line[0]
    return None


def _detect_account_type(folded: str) -> AccountType | None:
    if "TARJETA" in folded and "CREDITO" in folded:
        return AccountType.CREDIT_CARD
    if "AHORROS" in folded or "AHORRO" in folded:
        return AccountType.SAVINGS
    if "CORRIENTE" in folded:
        return AccountType.CHECKING
    if "PRESTAMO" in folded or "CREDITO DE LIBRE INVERSION" in folded or "CREDITO HIPOTECARIO" in folded:
        return AccountType.LOAN
    if "INVERSION" in folded or "CDT" in folded.split():
        return AccountType.INVESTMENT
    return None


def extract_statement_metadata(lines: list[str]) -> StatementMetadata:
    """Read header facts from the first lines of a statement, plus summary totals anywhere in it."""
    metadata = StatementMetadata()
    for index, line in enumerate(lines):
        folded = fold(line)
        if index < HEADER_SCAN_LINES:
            if metadata.account_number is None and ("NUMERO" in folded or "CUENTA" in folded or "NO." in folded):
                match = ACCOUNT_NUMBER_RE.search(line)
                if match:
                    digits = re.sub(r"\D", "", match.group(1))
                    if 8 <= len(digits) <= 20:  # noqa: PLR2004
                        metadata.account_number = digits
            if metadata.account_type is None:
                metadata.account_type = _detect_account_type(folded)
            if metadata.bank_name is None:
                issuer = issuer_by_name(folded)
                if issuer:
                    metadata.bank_name = issuer.display_name
            if metadata.start_date is None:
                period = PERIOD_RE.search(folded)
                if period:
                    metadata.start_date = parse_statement_date(period.group(1))
                    metadata.end_date = parse_statement_date(period.group(2))
        if LINE_DATE_RE.match(line) or ISO_LINE_DATE_RE.match(line):
            continue
        for field_name, keywords in SUMMARY_FIELDS.items():
            if getattr(metadata, field_name) is not None:
                continue
            keyword = next((k for k in keywords if k in folded), None)
            if keyword:
                setattr(metadata, field_name, _summary_value(lines, index, keyword))
    return metadata


def infer_statement_year(lines: list[str], metadata: StatementMetadata) -> int:
    """Year used for ``DD/MM`` transaction dates."""
    if metadata.end_date:
        return metadata.end_date.year
    for line in lines[:HEADER_SCAN_LINES]:
        folded = fold(line)
        for pattern in YEAR_HINT_RES:
            match = pattern.search(folded)
            if match and 2000 <= int(match.group(1)) <= 2100:  # noqa: PLR2004
                return int(match.group(1))
    return date.today().year  # noqa: DTZ011


def _detect_layout(folded: str) -> ColumnLayout | None:
    """Recognize a table header line and the columns it announces."""
    if "FECHA" not in folded:
        return None
    has_debit = any(k in folded for k in ("DEBITO", "CARGO", "RETIRO"))
    has_credit = any(k in folded for k in ("CREDITO", "ABONO", "DEPOSITO"))
    has_value = "VALOR" in folded or "MONTO" in folded
    has_balance = "SALDO" in folded
    if not (has_value or has_balance or has_debit or has_credit):
        return None
    return ColumnLayout(has_balance=has_balance, has_split=has_debit and has_credit, found=True)


def _split_amounts(rest: str) -> tuple[str, list[str]]:
    """Split a line body into its description and the trailing run of amount tokens."""
    tokens = rest.replace("$ ", "$").split()
    amounts: list[str] = []
    while tokens and len(amounts) < MAX_TRAILING_AMOUNTS and is_amount_token(tokens[-1]):
        amounts.insert(0, tokens.pop())
    return " ".join(tokens).strip(), amounts


def _resolve_date(day: str, month: str, year: str | None, default_year: int, metadata: StatementMetadata) -> str | None:
    if year:
        full_year = int(year) + 2000 if len(year) == 2 else int(year)  # noqa: PLR2004
    else:
        full_year = default_year
        start, end = metadata.start_date, metadata.end_date
        # Statements spanning a new year: months before the start month belong to the end year.
        if start and end and start.year != end.year:
            full_year = start.year if int(month) >= start.month else end.year
    try:
        return date(full_year, int(month), int(day)).isoformat()
    except ValueError:
        return None


def _keyword_type(description: str) -> TransactionType | None:
    folded = fold(description)
    if any(k in folded for k in TRANSFER_KEYWORDS):
        return TransactionType.TRANSFER
    if any(k in folded for k in INCOME_KEYWORDS):
        return TransactionType.INCOME
    if any(k in folded for k in EXPENSE_KEYWORDS):
        return TransactionType.EXPENSE
    return None


def _balance_type(previous: float | None, amount: float, balance: float | None) -> TransactionType | None:
    if previous is None or balance is None:
        return None
    if abs(previous + amount - balance) <= BALANCE_TOLERANCE:
        return TransactionType.INCOME
    if abs(previous - amount - balance) <= BALANCE_TOLERANCE:
        return TransactionType.EXPENSE
    return None


def _parse_line(  # noqa: PLR0913
    line: str,
    layout: ColumnLayout,
    default_year: int,
    metadata: StatementMetadata,
    previous_balance: float | None,
    line_number: int,
) -> RawTransaction | None:
    """Turn one dated line into a raw transaction, or None when it cannot be read."""
    match = LINE_DATE_RE.match(line)
    if match:
        day, month, year, rest = match.groups()
        iso_date = _resolve_date(day, month, year, default_year, metadata)
    else:
        iso_match = ISO_LINE_DATE_RE.match(line)
        if not iso_match:
            return None
        parsed = parse_statement_date(iso_match.group(1))
        iso_date = parsed.isoformat() if parsed else None
        rest = iso_match.group(2)
    if iso_date is None:
        return None
    description, tokens = _split_amounts(rest)
    if not description or not tokens:
        return None
    values = [parse_amount(token) for token in tokens]
    if any(value is None for value in values):
        return None

    amount_token = tokens[-1]
    balance: float | None = None
    debit = credit = None
    if layout.has_split and len(tokens) >= 3:  # noqa: PLR2004
        debit, credit, balance = values[-3], values[-2], values[-1]
        amount_token = tokens[-3] if debit else tokens[-2]
    elif len(tokens) >= 2 and (layout.has_balance or not layout.found):  # noqa: PLR2004
        amount_token, balance = tokens[-2], values[-1]
    elif layout.has_split and len(tokens) == 2:  # noqa: PLR2004
        debit, credit = values[-2], values[-1]
        amount_token = tokens[-2] if debit else tokens[-1]

    signed = parse_amount(amount_token)
    if signed is None:
        return None
    amount = abs(signed)

    txn_type: TransactionType | None = None
    if debit or credit:
        txn_type = TransactionType.EXPENSE if debit else TransactionType.INCOME
    elif signed < 0:
        txn_type = TransactionType.EXPENSE
    elif amount_token.lstrip("($").startswith("+"):
        txn_type = TransactionType.INCOME
    if txn_type is None:
        txn_type = _balance_type(previous_balance, amount, balance)
    if txn_type is None:
        txn_type = _keyword_type(description)
    if txn_type is None:
        txn_type = TransactionType.INCOME

    return RawTransaction(
        date=iso_date,
        description=description,
        amount=amount,
        type=txn_type.value,
        merchant=extract_merchant(description),
        balance=balance,
        raw_data={"line": line, "line_number": line_number},
    )


def parse(text: str) -> ParsedStatement:
    """Parse statement text into raw transactions and statement metadata."""
    lines = extract_lines(text)
    parsed = ParsedStatement(has_statement_content=has_transaction_data(text))
    parsed.metadata = extract_statement_metadata(lines)
    default_year = infer_statement_year(lines, parsed.metadata)

    layout = ColumnLayout()
    running_balance = parsed.metadata.previous_balance
    skipped = 0
    for line_number, line in enumerate(lines, start=1):
        detected = _detect_layout(fold(line))
        if detected and not (LINE_DATE_RE.match(line) or ISO_LINE_DATE_RE.match(line)):
            layout = detected
            continue
        if not (LINE_DATE_RE.match(line) or ISO_LINE_DATE_RE.match(line)):
            continue
        txn = _parse_line(line, layout, default_year, parsed.metadata, running_balance, line_number)
        if txn is None:
            skipped += 1
            continue
        parsed.transactions.append(txn)
        if txn.balance is not None:
            running_balance = txn.balance

    if skipped:
        parsed.warnings.append(f"{skipped} dated line(s) could not be read as transactions")
    logger.info(
        f"Parsed {len(parsed.transactions)} transactions "
        f"(bank={parsed.metadata.bank_name}, account_type={parsed.metadata.account_type}, year={default_year})"
    )
    return parsed
