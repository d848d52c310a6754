"""mtr_etl.spreadsheet_parser

Parses the analytic MTR report workbook into ManifestRecord objects.

Algorithm:
  1. Use the worksheet with the largest rows x columns extent.
  2. Score the first 20 rows by how many cells contain a header hint
     keyword (folded text); the best-scoring row is the header, ties keep
     the earliest row.
  3. Map header label -> column index (blank labels skipped, first
     occurrence wins).
  4. Resolve each canonical field through the alias table: exact label,
     then case-insensitive label, then folded-substring match.
  5. One WasteLine per data row; rows sharing a manifest number are
     grouped under the first row's header-level fields. Blank manifest
     numbers are skipped. Output keeps first-seen order.

An empty or unreadable workbook yields [] rather than raising.
"""

from __future__ import annotations

import io
import logging
from decimal import Decimal
from typing import Any, Sequence

from openpyxl import load_workbook

from mtr_etl.header_aliases import HeaderAliases, load_header_aliases
from mtr_etl.normalize import cell_text, fold_text, parse_quantity, trim
from mtr_etl.records import ManifestRecord, Party, Vehicle, WasteLine
from mtr_etl.shared import ParseError

log = logging.getLogger(__name__)

HEADER_SCAN_ROWS = 20


# ---------------------------------------------------------------------------
# Workbook access
# ---------------------------------------------------------------------------

def load_rows(file_bytes: bytes) -> list[tuple[Any, ...]]:
    """Return every row (cell values) of the largest worksheet.

    Any failure while opening the workbook or reading its cells (bad zip,
    truncated sheet XML, unsupported content) is reported as ParseError.

    Raises:
        ParseError: If the bytes are not a readable workbook.
    """
    try:
        wb = load_workbook(io.BytesIO(file_bytes), read_only=False, data_only=True)
        try:
            if not wb.worksheets:
                return []
            ws = max(wb.worksheets, key=lambda s: (s.max_row or 0) * (s.max_column or 0))
            log.debug("Using sheet %r with %s rows and %s cols", ws.title, ws.max_row, ws.max_column)
            return [tuple(r) for r in ws.iter_rows(values_only=True)]
        finally:
            wb.close()
    except Exception as exc:
        raise ParseError(f"unreadable workbook: {exc}") from exc


# ---------------------------------------------------------------------------
# Header detection
# ---------------------------------------------------------------------------

def detect_header_row(rows: Sequence[Sequence[Any]], hints: Sequence[str]) -> int:
    """0-based index of the best-scoring header row among the first 20 rows."""
    folded_hints = [h for h in (fold_text(x) for x in hints) if h]
    best_index = 0
    best_score = -1
    for index, row in enumerate(rows[:HEADER_SCAN_ROWS]):
        score = 0
        for value in row:
            text = cell_text(value)
            if not text:
                continue
            folded = fold_text(text)
            if any(h in folded for h in folded_hints):
                score += 1
        if score > best_score:
            best_score = score
            best_index = index
    return best_index


def build_column_map(header: Sequence[Any]) -> dict[str, int]:
    columns: dict[str, int] = {}
    for index, value in enumerate(header):
        label = cell_text(value)
        if label and label not in columns:
            columns[label] = index
    return columns


def resolve_column(columns: dict[str, int], variants: Sequence[str]) -> int | None:
    """Column index for the first matching variant, or None.

    Exact and case-insensitive matches are tried per variant, in order,
    before falling back to a folded-substring search.
    """
    for name in variants:
        if name in columns:
            return columns[name]
        lowered = name.lower()
        for label, index in columns.items():
            if label.lower() == lowered:
                return index

    folded_columns: dict[str, int] = {}
    for label, index in columns.items():
        folded_columns.setdefault(fold_text(label), index)
    for name in variants:
        needle = fold_text(name)
        if not needle:
            continue
        for folded, index in folded_columns.items():
            if needle in folded:
                return index
    return None


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

class _RowReader:
    """Reads canonical fields from one data row through resolved indices."""

    def __init__(self, indices: dict[str, int | None]) -> None:
        self._indices = indices
        self._row: Sequence[Any] = ()

    def bind(self, row: Sequence[Any]) -> "_RowReader":
        self._row = row
        return self

    def raw(self, canonical: str) -> Any:
        index = self._indices.get(canonical)
        if index is None or index >= len(self._row):
            return None
        return self._row[index]

    def text(self, canonical: str) -> str:
        return cell_text(self.raw(canonical))

    def optional(self, canonical: str) -> str | None:
        return trim(self.text(canonical))


def _waste_line(r: _RowReader) -> WasteLine:
    return WasteLine(
        internal_code=r.optional("waste_internal_code"),
        description=r.optional("waste_description"),
        internal_description=r.optional("waste_internal_description"),
        waste_class=r.optional("waste_class"),
        unit=r.text("waste_unit"),
        indicated_qty=parse_quantity(r.raw("indicated_qty")) or Decimal("0"),
        received_qty=parse_quantity(r.raw("received_qty")),
    )


def _party(r: _RowReader, prefix: str) -> Party:
    return Party(
        unit_id=r.text(f"{prefix}_unit_id"),
        tax_id=r.text(f"{prefix}_tax_id"),
        name=r.text(f"{prefix}_name"),
        note=r.optional(f"{prefix}_note"),
    )


def _manifest(r: _RowReader, number: str) -> ManifestRecord:
    transporter = _party(r, "transporter")
    transporter.vehicle = Vehicle(
        driver_name=r.optional("driver_name"),
        plate=r.optional("vehicle_plate"),
    )
    return ManifestRecord(
        manifest_number=number,
        manifest_type=r.text("manifest_type"),
        emission_responsible=r.text("emission_responsible"),
        has_complementary=r.optional("has_complementary"),
        provisional_number=r.optional("provisional_number"),
        emission_date=r.text("emission_date"),
        receipt_date=r.optional("receipt_date"),
        status=r.text("status"),
        receipt_responsible=r.optional("receipt_responsible"),
        justification=r.optional("justification"),
        treatment=r.text("treatment"),
        cdf_number=r.optional("cdf_number"),
        generator=_party(r, "generator"),
        transporter=transporter,
        receiver=_party(r, "receiver"),
    )


def records_from_rows(
    rows: Sequence[Sequence[Any]],
    aliases: HeaderAliases,
) -> list[ManifestRecord]:
    """Group data rows into manifests (pure; no workbook I/O)."""
    if not rows:
        return []
    header_index = detect_header_row(rows, aliases.header_hints)
    columns = build_column_map(rows[header_index])
    indices = {
        canonical: resolve_column(columns, variants)
        for canonical, variants in aliases.columns.items()
    }
    log.debug(
        "Header row %d; %d columns; manifest_number col=%s",
        header_index + 1, len(columns), indices.get("manifest_number"),
    )

    records: list[ManifestRecord] = []
    by_number: dict[str, ManifestRecord] = {}
    reader = _RowReader(indices)
    for row in rows[header_index + 1:]:
        r = reader.bind(row)
        number = r.text("manifest_number")
        if not number:
            continue
        line = _waste_line(r)
        existing = by_number.get(number)
        if existing is None:
            record = _manifest(r, number)
            record.waste_lines.append(line)
            by_number[number] = record
            records.append(record)
        else:
            existing.waste_lines.append(line)
    return records


def parse(file_bytes: bytes, aliases: HeaderAliases | None = None) -> list[ManifestRecord]:
    """Parse report bytes into manifests; [] for empty or unreadable input."""
    aliases = aliases or load_header_aliases()
    try:
        rows = load_rows(file_bytes)
    except ParseError as exc:
        log.warning("XLSX parse issue: %s. Treating as 0 manifests.", exc)
        return []
    return records_from_rows(rows, aliases)
