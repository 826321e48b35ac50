"""Table of known Colombian statement issuers and their fingerprints."""

import re
from dataclasses import dataclass

from app.core.models import BankFormat
from app.parsers.formats import fold


@dataclass(frozen=True)
class Issuer:
    """A bank the pipeline recognizes by name and, optionally, by column layout."""

    format: BankFormat
    display_name: str
    name_keywords: tuple[str, ...]
    header_patterns: tuple[str, ...] = ()
    min_columns: int = 0


KNOWN_ISSUERS: list[Issuer] = [
    Issuer(
        BankFormat.BANCOLOMBIA,
        "Bancolombia",
        ("BANCOLOMBIA",),
        (r"fecha.*transaccion", r"descripcion", r"valor", r"saldo", r"sucursal"),
        4,
    ),
    Issuer(
        BankFormat.NEQUI,
        "Nequi",
        ("NEQUI",),
        (r"fecha", r"hora", r"concepto", r"monto", r"tipo.*movimiento"),
        4,
    ),
    Issuer(
        BankFormat.DAVIVIENDA,
        "Davivienda",
        ("DAVIVIENDA", "DAVIPLATA"),
        (r"fecha", r"descripcion.*transaccion", r"debito", r"credito", r"saldo"),
        5,
    ),
    Issuer(
        BankFormat.BBVA,
        "BBVA",
        ("BBVA",),
        (r"fecha.*operacion", r"fecha.*valor", r"concepto", r"cargo", r"abono", r"saldo"),
        5,
    ),
    Issuer(
        BankFormat.BANCO_BOGOTA,
        "Banco de Bogotá",
        ("BANCO DE BOGOTA", "BANCOBOGOTA"),
        (r"fecha", r"detalle", r"debitos", r"creditos", r"saldo"),
        4,
    ),
    # Recognized by name only; their statements go through the generic layout.
    Issuer(BankFormat.GENERIC, "Banco de Occidente", ("BANCO DE OCCIDENTE",)),
    Issuer(BankFormat.GENERIC, "Banco Popular", ("BANCO POPULAR",)),
    Issuer(BankFormat.GENERIC, "Banco AV Villas", ("AV VILLAS",)),
    Issuer(BankFormat.GENERIC, "Banco Caja Social", ("CAJA SOCIAL",)),
    Issuer(BankFormat.GENERIC, "Scotiabank Colpatria", ("COLPATRIA", "SCOTIABANK")),
    Issuer(BankFormat.GENERIC, "Itaú", ("ITAU",)),
    Issuer(BankFormat.GENERIC, "Banco Falabella", ("FALABELLA",)),
    Issuer(BankFormat.GENERIC, "Nu Colombia", ("NU COLOMBIA", "NUBANK")),
    Issuer(BankFormat.GENERIC, "Lulo Bank", ("LULO BANK",)),
]

_ALNUM_RE = re.compile(r"[^a-z0-9]")


def normalize_header(header: str) -> str:
    """Lower-case a column header and drop accents and punctuation."""
    return _ALNUM_RE.sub("", fold(header).lower())


def issuer_by_name(text: str) -> Issuer | None:
    """Find the first issuer whose name appears in already-folded text."""
    for issuer in KNOWN_ISSUERS:
        if any(keyword in text for keyword in issuer.name_keywords):
            return issuer
    return None


def issuer_by_format(bank_format: BankFormat) -> Issuer | None:
    """Return the table entry for a bank format, None for GENERIC."""
    if bank_format == BankFormat.GENERIC:
        return None
    return next((issuer for issuer in KNOWN_ISSUERS if issuer.format == bank_format), None)
