"""mtr_etl.reference_data

Controlled vocabularies: status, manifest type, treatment, unit, waste
class and waste type.

Text vocabularies are keyed by ``description_norm`` (lowercased,
whitespace-collapsed), so 'Recebido' and ' RECEBIDO ' resolve to the same
row. All ensure_* helpers are insert-if-missing then resolve id, and run
inside the caller's transaction.

``run_reference_load`` seeds the tables from the JSON files in the
reference data directory; missing files are skipped.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import psycopg

from mtr_etl.normalize import normalize_key, normalize_space, trim
from mtr_etl.shared import ReferenceCounters

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Text vocabularies
# ---------------------------------------------------------------------------

def _ensure_text_row(conn: psycopg.Connection, table: str, description: str | None) -> int:
    text = normalize_space(description) or ""
    key = normalize_key(text) or ""
    conn.execute(
        f"INSERT INTO {table} (description, description_norm) VALUES (%s, %s) "
        "ON CONFLICT (description_norm) DO NOTHING",
        (text, key),
    )
    row = conn.execute(
        f"SELECT id FROM {table} WHERE description_norm = %s", (key,)
    ).fetchone()
    return int(row[0])


def ensure_status(conn: psycopg.Connection, description: str | None) -> int:
    return _ensure_text_row(conn, "status", description)


def ensure_manifest_type(conn: psycopg.Connection, description: str | None) -> int:
    return _ensure_text_row(conn, "manifest_type", description)


def ensure_treatment(conn: psycopg.Connection, description: str | None) -> int | None:
    """Treatment id, or None when the description is blank."""
    if trim(description) is None:
        return None
    return _ensure_text_row(conn, "treatment", description)


# ---------------------------------------------------------------------------
# Coded vocabularies
# ---------------------------------------------------------------------------

def resolve_class_code(conn: psycopg.Connection, waste_class: str | None) -> int | None:
    """Case-insensitive match on class description."""
    key = normalize_key(waste_class)
    if key is None:
        return None
    row = conn.execute(
        "SELECT code FROM waste_class WHERE lower(trim(description)) = %s ORDER BY code LIMIT 1",
        (key,),
    ).fetchone()
    return int(row[0]) if row else None


def resolve_unit_code(conn: psycopg.Connection, unit: str | None) -> int | None:
    """Unit code by abbreviation, then by full description."""
    key = normalize_key(unit)
    if key is None:
        return None
    for column in ("abbreviation", "description"):
        row = conn.execute(
            f"SELECT code FROM unit WHERE lower(trim({column})) = %s ORDER BY code LIMIT 1",
            (key,),
        ).fetchone()
        if row:
            return int(row[0])
    return None


def ensure_waste_type(
    conn: psycopg.Connection,
    code: str,
    description: str | None,
    hazardous: bool,
    default_unit_code: int | None = None,
) -> bool:
    """Insert the waste type if missing. Returns True when inserted."""
    cur = conn.execute(
        """
        INSERT INTO waste_type (code, description, hazardous, default_unit_code)
        VALUES (%s, %s, %s, %s)
        ON CONFLICT (code) DO NOTHING
        """,
        (code, normalize_space(description) or "", hazardous, default_unit_code),
    )
    return cur.rowcount == 1


def waste_type_default_unit(conn: psycopg.Connection, code: str) -> int | None:
    row = conn.execute(
        "SELECT default_unit_code FROM waste_type WHERE code = %s", (code,)
    ).fetchone()
    return int(row[0]) if row and row[0] is not None else None


# ---------------------------------------------------------------------------
# Seed load
# ---------------------------------------------------------------------------

def _read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def _load_text_vocabulary(
    conn: psycopg.Connection, path: Path, table: str
) -> int:
    loaded = 0
    for raw in _read_json(path) or []:
        if trim(raw) is None:
            continue
        _ensure_text_row(conn, table, raw)
        loaded += 1
    return loaded


def _load_units(conn: psycopg.Connection, path: Path) -> int:
    loaded = 0
    for el in _read_json(path) or []:
        cur = conn.execute(
            "INSERT INTO unit (code, description, abbreviation) VALUES (%s, %s, %s) "
            "ON CONFLICT (code) DO NOTHING",
            (
                int(el["uniCodigo"]),
                normalize_space(el.get("uniDescricao")) or "",
                normalize_space(el.get("uniSigla")) or "",
            ),
        )
        loaded += cur.rowcount
    return loaded


def _load_classes(conn: psycopg.Connection, path: Path) -> int:
    loaded = 0
    for el in _read_json(path) or []:
        cur = conn.execute(
            "INSERT INTO waste_class (code, description, resolution) VALUES (%s, %s, %s) "
            "ON CONFLICT (code) DO NOTHING",
            (
                int(el["claCodigo"]),
                normalize_space(el.get("claDescricao")) or "",
                normalize_space(el.get("claResolucao")) or "",
            ),
        )
        loaded += cur.rowcount
    return loaded


def _load_waste_types(conn: psycopg.Connection, path: Path) -> int:
    loaded = 0
    for el in _read_json(path) or []:
        code = normalize_space(str(el.get("codigo_residuo") or ""))
        if not code:
            continue
        hazardous = bool(int(el.get("perigoso") or 0))
        default_unit = resolve_unit_code(conn, el.get("unidade_medida_sigla"))
        if ensure_waste_type(conn, code, el.get("descricao"), hazardous, default_unit):
            loaded += 1
    return loaded


def run_reference_load(
    conn: psycopg.Connection,
    data_dir: Path,
    counters: ReferenceCounters,
) -> None:
    """Seed all vocabularies from data_dir in one transaction.

    Units load before waste types so default units can be resolved.
    """
    steps = (
        ("situacao.json", "statuses", lambda p: _load_text_vocabulary(conn, p, "status")),
        ("tipoManifesto.json", "manifest_types", lambda p: _load_text_vocabulary(conn, p, "manifest_type")),
        ("tratamento.json", "treatments", lambda p: _load_text_vocabulary(conn, p, "treatment")),
        ("unidade.json", "units", lambda p: _load_units(conn, p)),
        ("classe.json", "classes", lambda p: _load_classes(conn, p)),
        ("residuos.json", "waste_types", lambda p: _load_waste_types(conn, p)),
    )
    try:
        for file_name, counter, loader in steps:
            path = data_dir / file_name
            if not path.exists():
                counters.files_missing += 1
                counters.warnings.append(f"reference file not found: {path}")
                log.info("reference file not found, skipping: %s", path)
                continue
            loaded = loader(path)
            setattr(counters, counter, getattr(counters, counter) + loaded)
            log.info("%s: %d row(s) loaded", file_name, loaded)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
