"""CSV statement exports.

Colombian banks export CSV in different encodings (UTF-8 for the digital banks, Windows-1252 or ISO-8859-1 for
the older ones) and with their own column names. The file is decoded with the first encoding that works,
loaded with pandas, and its columns are mapped by header name.
"""

import io
import re

import pandas as pd

from app.core.models import RawTransaction, TransactionType
from app.core.utils import get_logger
from app.detection.banks import normalize_header
from app.parsers.formats import extract_merchant, fold, parse_amount, parse_statement_date
from app.parsers.statement_parser import ParsedStatement

logger = get_logger("statement-import.parser")

ENCODINGS = ["utf-8-sig", "cp1252", "latin-1"]
MIN_COLUMNS = 3

COLUMN_PATTERNS = {
    "date": re.compile(r"fecha"),
    "description": re.compile(r"descripcion|concepto|detalle|referencia|movimiento"),
    "debit": re.compile(r"debito|cargo|retiro"),
    "credit": re.compile(r"credito|abono|deposito"),
    "amount": re.compile(r"valor|monto|importe"),
    "balance": re.compile(r"saldo|balance"),
    "kind": re.compile(r"^tipo"),
}


class CsvParseError(ValueError):
    """The file could not be read as a statement CSV."""


def decode_csv(data: bytes) -> tuple[str, str]:
    """Decode CSV bytes, returning the text and the encoding that worked."""
    for encoding in ENCODINGS:
        try:
            return data.decode(encoding), encoding
        except UnicodeDecodeError:
            continue
    msg = "Could not decode CSV file"
    raise CsvParseError(msg)


def map_columns(headers: list[str]) -> dict[str, int]:
    """Map each column role to the index of the first header that matches it."""
    normalized = [normalize_header(h) for h in headers]
    columns: dict[str, int] = {}
    for role, pattern in COLUMN_PATTERNS.items():
        for idx, header in enumerate(normalized):
            if idx in columns.values() or (role != "date" and "fecha" in header):
                continue
            if pattern.search(header):
                columns[role] = idx
                break
    if "date" not in columns:
        columns["date"] = 0
    if "description" not in columns:
        columns["description"] = 1 if columns["date"] != 1 else 0
    if "amount" not in columns and not ("debit" in columns and "credit" in columns):
        columns["amount"] = 2
    return columns


def _cell(row: list[str], idx: int | None) -> str:
    if idx is None or idx >= len(row):
        return ""
    return row[idx].strip()


def _row_type(
    signed: float, debit: float | None, credit: float | None, kind: str, description: str
) -> TransactionType:
    if debit:
        return TransactionType.EXPENSE
    if credit:
        return TransactionType.INCOME
    folded_kind = fold(kind)
    if any(k in folded_kind for k in ("SALIDA", "DEBITO", "ENVIO", "PAGO", "RETIRO")):
        return TransactionType.EXPENSE
    if any(k in folded_kind for k in ("ENTRADA", "CREDITO", "RECIBIDO", "ABONO", "DEPOSITO")):
        return TransactionType.INCOME
    if signed < 0:
        return TransactionType.EXPENSE
    folded = fold(description)
    if "TRANSFERENCIA" in folded or "ENVIO" in folded:
        return TransactionType.TRANSFER
    return TransactionType.INCOME if signed > 0 else TransactionType.EXPENSE


def parse_csv(data: bytes) -> ParsedStatement:
    """Parse a CSV statement export into raw transactions.

    Raises ``CsvParseError`` when the file is empty, cannot be tokenized, or has fewer than three columns.
    """
    text, encoding = decode_csv(data)
    try:
        frame = pd.read_csv(io.StringIO(text), dtype=str, keep_default_na=False, skip_blank_lines=True)
    except (pd.errors.EmptyDataError, pd.errors.ParserError) as exc:
        msg = f"CSV parsing failed: {exc}"
        raise CsvParseError(msg) from exc
    if frame.empty:
        msg = "CSV file contains no data rows"
        raise CsvParseError(msg)
    if len(frame.columns) < MIN_COLUMNS:
        msg = f"CSV file has too few columns ({len(frame.columns)}, minimum {MIN_COLUMNS} expected)"
        raise CsvParseError(msg)

    headers = [str(column).strip() for column in frame.columns]
    columns = map_columns(headers)
    logger.info(f"CSV decoded as {encoding}: {len(frame)} rows, columns={columns}")

    parsed = ParsedStatement(has_statement_content=True, headers=headers)
    skipped = 0
    for row_number, values in enumerate(frame.itertuples(index=False, name=None), start=1):
        row = [str(v) for v in values]
        txn_date = parse_statement_date(_cell(row, columns.get("date")))
        if txn_date is None:
            skipped += 1
            continue
        description = _cell(row, columns.get("description")) or "Sin descripción"
        debit = parse_amount(_cell(row, columns.get("debit"))) if "debit" in columns else None
        credit = parse_amount(_cell(row, columns.get("credit"))) if "credit" in columns else None
        if debit is not None or credit is not None:
            signed = (credit or 0.0) - abs(debit or 0.0)
        else:
            amount = parse_amount(_cell(row, columns.get("amount")))
            if amount is None:
                skipped += 1
                continue
            signed = amount
        balance = parse_amount(_cell(row, columns.get("balance"))) if "balance" in columns else None
        txn_type = _row_type(signed, debit, credit, _cell(row, columns.get("kind")), description)
        parsed.transactions.append(
            RawTransaction(
                date=txn_date.isoformat(),
                description=description,
                amount=abs(signed),
                type=txn_type.value,
                merchant=extract_merchant(description),
                balance=balance,
                raw_data={"row": row_number, **dict(zip(headers, row, strict=False))},
            )
        )
    if skipped:
        parsed.warnings.append(f"{skipped} CSV row(s) skipped: unreadable date or amount")
    return parsed
