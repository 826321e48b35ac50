"""Colombian number and date conventions shared by the statement parsers.

Statements mix ``1.234.567,89`` (dot thousands, comma decimals) with ``1,234,567.89``; dates come as
``DD/MM/YYYY``, ``DD-MM-YYYY``, two-digit years, ISO, or with Spanish month abbreviations.
"""

import math
import re
import string
import unicodedata
from datetime import date, datetime

AMOUNT_TOKEN_RE = re.compile(r"^\(?[-+]?\$?[-+]?(?:\d{1,3}(?:[.,]\d{3})+|\d+)(?:[.,]\d{1,2})?\)?-?$")
ISO_PREFIX_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})")

DATE_FORMATS = [
    "%d/%m/%Y",
    "%d-%m-%Y",
    "%d/%m/%y",
    "%d-%m-%y",
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%d.%m.%Y",
]

SPANISH_MONTHS = {
    "ENE": 1,
    "FEB": 2,
    "MAR": 3,
    "ABR": 4,
    "MAY": 5,
    "JUN": 6,
    "JUL": 7,
    "AGO": 8,
    "SEP": 9,
    "SET": 9,
    "OCT": 10,
    "NOV": 11,
    "DIC": 12,
}
SPANISH_DATE_RE = re.compile(r"^(\d{1,2})[\s/.-]*([A-Z]{3})[A-Z]*[\s/.-]*(\d{2,4})$")

MERCHANT_PREFIXES = [
    "COMPRA EN ",
    "PAGO QR ",
    "PAGO A ",
    "PAGO EN ",
    "TRANSF DE ",
    "TRANSFERENCIA A ",
    "TRANSFERENCIA DE ",
    "RETIRO EN ",
]


def fold(text: str) -> str:
    """Upper-case and strip accents so keyword matching ignores them."""
    value = unicodedata.normalize("NFKD", text)
    value = value.encode("ASCII", "ignore").decode()
    return value.upper()


def extract_lines(text: str) -> list[str]:
    """Split text into trimmed, non-blank lines."""
    return [line.strip() for line in text.splitlines() if line.strip()]


def is_amount_token(token: str) -> bool:
    """Whether a whitespace-delimited token looks like a money amount."""
    return bool(AMOUNT_TOKEN_RE.match(token))


def parse_amount(value: object) -> float | None:
    """Parse an amount written in either separator convention.

    When both ``.`` and ``,`` appear, the right-most one is the decimal separator. A single separator is a
    thousands separator when it repeats or is followed by exactly three digits, a decimal separator otherwise.
    Negative amounts may use a leading or trailing ``-`` or parentheses. NaN and infinities are rejected.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int | float):
        try:
            number = float(value)
        except OverflowError:
            return None
        return number if math.isfinite(number) else None
    cleaned = str(value).strip().upper()
    if not cleaned:
        return None
    cleaned = cleaned.replace("COP", "").replace("$", "")
    cleaned = "".join(cleaned.split())
    negative = False
    if cleaned.startswith("(") and cleaned.endswith(")"):
        negative = True
        cleaned = cleaned[1:-1]
    if cleaned.startswith("-"):
        negative = True
        cleaned = cleaned[1:]
    elif cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.endswith("-"):
        negative = True
        cleaned = cleaned[:-1]
    if not cleaned or any(c not in string.digits + ".," for c in cleaned) or not cleaned[0].isdigit():
        return None

    has_dot = "." in cleaned
    has_comma = "," in cleaned
    if has_dot and has_comma:
        decimal_sep = "." if cleaned.rfind(".") > cleaned.rfind(",") else ","
        thousands_sep = "," if decimal_sep == "." else "."
        cleaned = cleaned.replace(thousands_sep, "").replace(decimal_sep, ".")
    elif has_dot or has_comma:
        sep = "." if has_dot else ","
        head, _, tail = cleaned.rpartition(sep)
        if cleaned.count(sep) > 1 or len(tail) == 3:  # noqa: PLR2004
            cleaned = cleaned.replace(sep, "")
        else:
            cleaned = f"{head.replace(sep, '')}.{tail}"
    try:
        number = float(cleaned)
    except ValueError:
        return None
    if not math.isfinite(number):
        return None
    return -number if negative else number


def parse_statement_date(value: object) -> date | None:
    """Parse a statement date into a calendar date, day-first."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    cleaned = str(value).strip()
    if not cleaned:
        return None
    iso = ISO_PREFIX_RE.match(cleaned)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return None
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()  # noqa: DTZ007
        except ValueError:
            continue
    spanish = SPANISH_DATE_RE.match(fold(cleaned))
    if spanish:
        day, month_name, year = spanish.groups()
        month = SPANISH_MONTHS.get(month_name)
        if month:
            full_year = int(year) + 2000 if len(year) == 2 else int(year)  # noqa: PLR2004
            try:
                return date(full_year, month, int(day))
            except ValueError:
                return None
    return None


def extract_merchant(description: str) -> str | None:
    """Pull a merchant name out of a description using common Colombian prefixes."""
    folded = fold(description)
    for prefix in MERCHANT_PREFIXES:
        idx = folded.find(prefix)
        if idx >= 0:
            merchant = description[idx + len(prefix) :].strip()
            return merchant or None
    return None
