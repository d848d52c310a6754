"""Normalization functions for manifest (MTR) ingestion.

All functions accept str | None (or raw spreadsheet cell values where
noted) and return the appropriate type or None.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from rapidfuzz.distance import Levenshtein

PERSON_INDIVIDUAL = "F"
PERSON_ORGANIZATION = "J"

MAX_ERROR_DESCRIPTION = 2048

_NON_DIGITS = re.compile(r"[^0-9]")
_HAZARD_MARK = re.compile(r"\(\*\)")

_DATE_FORMATS = (
    "%d/%m/%Y",
    "%d/%m/%Y %H:%M:%S",
    "%d/%m/%Y %H:%M",
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%Y-%m-%dT%H:%M:%SZ",
)


# ---------------------------------------------------------------------------
# Rule 1: trim
# ---------------------------------------------------------------------------

def trim(value: str | None) -> str | None:
    """Strip leading/trailing whitespace; treat empty string as None."""
    if value is None:
        return None
    v = value.strip()
    return v if v else None


# ---------------------------------------------------------------------------
# Rule 2: normalize_space
# ---------------------------------------------------------------------------

def normalize_space(value: str | None) -> str | None:
    """Collapse internal runs of whitespace to single spaces, then trim."""
    v = trim(value)
    if v is None:
        return None
    return re.sub(r"\s+", " ", v)


def normalize_key(value: str | None) -> str | None:
    """Case/whitespace-insensitive key for reference vocabulary rows."""
    v = normalize_space(value)
    return v.lower() if v else None


# ---------------------------------------------------------------------------
# Rule 3: only_digits / person type
# ---------------------------------------------------------------------------

def only_digits(value: str | None) -> str:
    """Return the digits of value ('' for None)."""
    return _NON_DIGITS.sub("", value or "")


def person_type_for(tax_id: str | None) -> str:
    """'F' (individual, CPF) when the digit-only id has 11 digits, else 'J'."""
    return PERSON_INDIVIDUAL if len(only_digits(tax_id)) == 11 else PERSON_ORGANIZATION


# ---------------------------------------------------------------------------
# Rule 4: fold_text  (header matching)
# ---------------------------------------------------------------------------

def fold_text(value: str | None) -> str:
    """Strip diacritics, lowercase, keep letters and digits only.

    'Nº MTR' -> 'nmtr', 'Situação' -> 'situacao'.
    """
    if not value:
        return ""
    v = unicodedata.normalize("NFKD", value)
    v = "".join(c for c in v if not unicodedata.combining(c))
    return "".join(c.lower() for c in v if c.isalnum())


# ---------------------------------------------------------------------------
# Rule 5: name similarity
# ---------------------------------------------------------------------------

def normalize_person_name(value: str | None) -> str:
    """Trim, uppercase and collapse whitespace.

    Diacritics are folded so that 'JOÃO' and 'joao' compare equal.
    """
    v = normalize_space(value)
    if v is None:
        return ""
    v = unicodedata.normalize("NFKD", v)
    v = "".join(c for c in v if not unicodedata.combining(c))
    return v.upper()


def similarity(a: str | None, b: str | None) -> float:
    """Return 1 - distance / max_len over normalized names.

    Both empty -> 1.0; exactly one empty -> 0.0.
    """
    na = normalize_person_name(a)
    nb = normalize_person_name(b)
    if not na and not nb:
        return 1.0
    if not na or not nb:
        return 0.0
    return 1.0 - Levenshtein.distance(na, nb) / max(len(na), len(nb))


# ---------------------------------------------------------------------------
# Rule 6: waste code helpers
# ---------------------------------------------------------------------------

def derive_waste_code(description: str | None) -> str:
    """Waste-type code from a description such as '170904 - Resíduos ...'.

    Text before the first '-', digits only when it has digits, else the
    raw (trimmed) prefix. '' when nothing is derivable.
    """
    v = trim(description)
    if v is None:
        return ""
    prefix = v.split("-", 1)[0].strip()
    digits = only_digits(prefix)
    return digits if digits else prefix


def has_hazard_mark(value: str | None) -> bool:
    """True when the text carries the '(*)' hazardous-waste marker."""
    return bool(_HAZARD_MARK.search(value or ""))


# ---------------------------------------------------------------------------
# Rule 7: cell_text  (spreadsheet cell -> str)
# ---------------------------------------------------------------------------

def cell_text(value: Any) -> str:
    """Render a spreadsheet cell the way it reads on screen.

    Integral floats lose their '.0' (manifest numbers often arrive as
    numbers); datetimes render as dd/mm/yyyy[ HH:MM:SS].
    """
    if value is None:
        return ""
    if isinstance(value, bool):
        return "Sim" if value else "Não"
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return repr(value)
    if isinstance(value, datetime):
        if value.hour or value.minute or value.second:
            return value.strftime("%d/%m/%Y %H:%M:%S")
        return value.strftime("%d/%m/%Y")
    if isinstance(value, date):
        return value.strftime("%d/%m/%Y")
    return str(value).strip()


# ---------------------------------------------------------------------------
# Rule 8: parse_quantity
# ---------------------------------------------------------------------------

def parse_quantity(value: Any) -> Decimal | None:
    """Parse a quantity from a cell, returning None on failure.

    Accepts numbers, '12,5' and '1.234,56' (Brazilian separators).
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float, Decimal)):
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return None
    v = trim(str(value))
    if v is None:
        return None
    v = v.replace(" ", "")
    if "," in v and "." in v:
        v = v.replace(".", "").replace(",", ".")
    else:
        v = v.replace(",", ".")
    try:
        d = Decimal(v)
    except InvalidOperation:
        return None
    return d if d.is_finite() else None


# ---------------------------------------------------------------------------
# Rule 9: parse_manifest_date
# ---------------------------------------------------------------------------

def parse_manifest_date(value: str | None) -> datetime | None:
    """Parse the free-text emission/receipt dates.  Unparseable -> None."""
    v = normalize_space(value)
    if v is None:
        return None
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(v, fmt)
        except ValueError:
            continue
    return None


# ---------------------------------------------------------------------------
# Helper: truncate_error
# ---------------------------------------------------------------------------

def truncate_error(message: str | None, limit: int = MAX_ERROR_DESCRIPTION) -> str:
    """Non-empty error description capped at limit characters."""
    text = (message or "").strip() or "Unknown error"
    return text[:limit]
