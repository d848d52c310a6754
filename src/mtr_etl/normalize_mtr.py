"""mtr_etl.normalize_mtr

Normalizes staged manifests into the warehouse.

Processing order per staged manifest (one transaction):
  1. Ensure manifest type / status / treatment vocabulary rows
  2. Resolve generator, transporter and receiver entities by tax id
     (MissingEntityError when any is unknown; enrichment must run first)
  3. Insert-if-missing entity roles
  4. Insert-if-missing emission / receipt responsible persons
  5. Upsert the manifest row; on conflict only type, dates, status,
     justification, treatment and CDF change
  6. Insert-if-missing vehicle plate and driver under the transporter;
     individual transporters get the owner-operator flag by name similarity
  7. Waste lines (only when the manifest row was newly inserted)

Then, in a separate transaction:
  success  copy to mtr_history and delete from the working set
  failure  write to mtr_quarantine (truncated error) and delete from the
           working set; a failed quarantine write is logged only

A failed history move after a successful write is logged and counted;
the manifest stays staged and is not quarantined.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

import psycopg
from psycopg.types.json import Jsonb

from mtr_etl import reference_data
from mtr_etl.normalize import (
    PERSON_INDIVIDUAL,
    derive_waste_code,
    has_hazard_mark,
    normalize_space,
    only_digits,
    parse_manifest_date,
    similarity,
    trim,
    truncate_error,
)
from mtr_etl.records import (
    ROLE_GENERATOR,
    ROLE_RECEIVER,
    ROLE_TRANSPORTER,
    ManifestRecord,
    Party,
    Vehicle,
    WasteLine,
)
from mtr_etl.settings import MtrSettings
from mtr_etl.shared import MissingEntityError, MtrEtlError, NormalizationError, NormalizeCounters

log = logging.getLogger(__name__)

RESPONSIBLE_EMISSION = "EMISSAO"
RESPONSIBLE_RECEIPT = "RECEBIMENTO"

DEFAULT_SIMILARITY_THRESHOLD = 0.80


@dataclass
class StagedManifest:
    record: ManifestRecord
    created_by: str = "system"
    created_at: datetime | None = None

    @property
    def manifest_number(self) -> str:
        return self.record.manifest_number

    def payload(self) -> dict:
        return {
            **self.record.to_payload(),
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass
class NormalizeOutcome:
    manifest_id: int
    inserted: bool
    waste_lines_inserted: int = 0
    waste_lines_skipped: int = 0


# ---------------------------------------------------------------------------
# Working-set reads
# ---------------------------------------------------------------------------

_STAGED_COLUMNS = """
    manifest_number, manifest_type, emission_responsible, has_complementary,
    provisional_number, emission_date, receipt_date, status,
    receipt_responsible, justification, treatment, cdf_number,
    generator_unit_id, generator_tax_id, generator_name, generator_note,
    transporter_unit_id, transporter_tax_id, transporter_name, transporter_note,
    transporter_driver, transporter_plate,
    receiver_unit_id, receiver_tax_id, receiver_name, receiver_note,
    created_by, created_at
"""


def _staged_from_row(row: tuple) -> StagedManifest:
    (
        number, mtype, emission_resp, has_comp, provisional, emission_date,
        receipt_date, status, receipt_resp, justification, treatment, cdf,
        g_unit, g_tax, g_name, g_note,
        t_unit, t_tax, t_name, t_note, t_driver, t_plate,
        r_unit, r_tax, r_name, r_note,
        created_by, created_at,
    ) = row
    record = ManifestRecord(
        manifest_number=number,
        manifest_type=mtype,
        emission_responsible=emission_resp,
        has_complementary=has_comp,
        provisional_number=provisional,
        emission_date=emission_date,
        receipt_date=receipt_date,
        status=status,
        receipt_responsible=receipt_resp,
        justification=justification,
        treatment=treatment,
        cdf_number=cdf,
        generator=Party(unit_id=g_unit, tax_id=g_tax, name=g_name, note=g_note),
        transporter=Party(
            unit_id=t_unit, tax_id=t_tax, name=t_name, note=t_note,
            vehicle=Vehicle(driver_name=t_driver, plate=t_plate),
        ),
        receiver=Party(unit_id=r_unit, tax_id=r_tax, name=r_name, note=r_note),
    )
    return StagedManifest(record=record, created_by=created_by, created_at=created_at)


def read_staged_batch(
    conn: psycopg.Connection,
    limit: int,
    exclude: list[str] | None = None,
) -> list[StagedManifest]:
    rows = conn.execute(
        f"""
        SELECT {_STAGED_COLUMNS}
        FROM mtr_staged
        WHERE manifest_number <> ALL(%s::text[])
        ORDER BY manifest_number
        LIMIT %s
        """,
        (exclude or [], limit),
    ).fetchall()
    staged = [_staged_from_row(r) for r in rows]
    if staged:
        by_number = {s.manifest_number: s for s in staged}
        line_rows = conn.execute(
            """
            SELECT manifest_number, description, internal_code, internal_description,
                   waste_class, unit, indicated_qty, received_qty
            FROM mtr_staged_waste_line
            WHERE manifest_number = ANY(%s::text[])
            ORDER BY manifest_number, line_no
            """,
            (list(by_number),),
        ).fetchall()
        for number, desc, icode, idesc, wclass, unit, indicated, received in line_rows:
            by_number[number].record.waste_lines.append(WasteLine(
                description=desc,
                internal_code=icode,
                internal_description=idesc,
                waste_class=wclass,
                unit=unit,
                indicated_qty=indicated if indicated is not None else Decimal("0"),
                received_qty=received,
            ))
    conn.commit()
    return staged


# ---------------------------------------------------------------------------
# Upsert steps
# ---------------------------------------------------------------------------

def resolve_entity_id(conn: psycopg.Connection, tax_id: str | None) -> int | None:
    digits = only_digits(tax_id)
    if not digits:
        return None
    row = conn.execute("SELECT id FROM entity WHERE tax_id = %s", (digits,)).fetchone()
    return int(row[0]) if row else None


def ensure_entity_role(conn: psycopg.Connection, entity_id: int, role: str) -> None:
    conn.execute(
        "INSERT INTO entity_role (entity_id, role) VALUES (%s, %s) ON CONFLICT DO NOTHING",
        (entity_id, role),
    )


def ensure_responsible(
    conn: psycopg.Connection, entity_id: int, role: str, name: str | None
) -> int:
    """Responsible-person id, deduped by case/whitespace-insensitive name."""
    clean = normalize_space(name) or ""
    row = conn.execute(
        """
        SELECT id FROM entity_responsible
        WHERE entity_id = %s AND role = %s
          AND upper(regexp_replace(trim(name), '\\s+', ' ', 'g')) = %s
        ORDER BY id
        LIMIT 1
        """,
        (entity_id, role, clean.upper()),
    ).fetchone()
    if row:
        return int(row[0])
    row = conn.execute(
        "INSERT INTO entity_responsible (entity_id, name, role) VALUES (%s, %s, %s) RETURNING id",
        (entity_id, clean, role),
    ).fetchone()
    return int(row[0])


def upsert_manifest(
    conn: psycopg.Connection,
    m: ManifestRecord,
    *,
    manifest_type_id: int,
    status_id: int,
    treatment_id: int | None,
    generator_id: int,
    transporter_id: int,
    receiver_id: int,
    emission_responsible_id: int,
    receipt_responsible_id: int | None,
) -> tuple[int, bool]:
    """Insert or update the manifest row. Returns (id, inserted).

    Party and responsible links are written on insert only.
    """
    row = conn.execute(
        """
        INSERT INTO manifest (
            number, manifest_type_id, generator_id, transporter_id, receiver_id,
            emission_responsible_id, receipt_responsible_id, status_id, treatment_id,
            cdf_number, justification, emission_date, receipt_date
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (number) DO UPDATE SET
            manifest_type_id = EXCLUDED.manifest_type_id,
            emission_date    = EXCLUDED.emission_date,
            receipt_date     = EXCLUDED.receipt_date,
            status_id        = EXCLUDED.status_id,
            justification    = EXCLUDED.justification,
            treatment_id     = EXCLUDED.treatment_id,
            cdf_number       = EXCLUDED.cdf_number,
            updated_at       = now()
        RETURNING id, (xmax = 0) AS inserted
        """,
        (
            m.manifest_number, manifest_type_id, generator_id, transporter_id, receiver_id,
            emission_responsible_id, receipt_responsible_id, status_id, treatment_id,
            trim(m.cdf_number), trim(m.justification),
            parse_manifest_date(m.emission_date), parse_manifest_date(m.receipt_date),
        ),
    ).fetchone()
    return int(row[0]), bool(row[1])


def ensure_vehicle_and_driver(
    conn: psycopg.Connection,
    transporter_id: int,
    transporter: Party,
    threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> None:
    vehicle = transporter.vehicle or Vehicle()

    plate = trim(vehicle.plate)
    if plate:
        conn.execute(
            "INSERT INTO entity_vehicle (entity_id, plate) VALUES (%s, %s) ON CONFLICT DO NOTHING",
            (transporter_id, plate.upper()),
        )

    driver = normalize_space(vehicle.driver_name)
    if not driver:
        return
    # Owner-operator flag only applies to individual transporters.
    is_owner: bool | None = None
    row = conn.execute(
        "SELECT person_type FROM entity WHERE id = %s", (transporter_id,)
    ).fetchone()
    if row and row[0] == PERSON_INDIVIDUAL:
        is_owner = similarity(driver, transporter.name) >= threshold

    exists = conn.execute(
        """
        SELECT 1 FROM entity_driver
        WHERE entity_id = %s AND upper(regexp_replace(trim(name), '\\s+', ' ', 'g')) = %s
        """,
        (transporter_id, driver.upper()),
    ).fetchone()
    if exists is None:
        conn.execute(
            "INSERT INTO entity_driver (entity_id, name, is_owner) VALUES (%s, %s, %s)",
            (transporter_id, driver, is_owner),
        )


def insert_waste_lines(
    conn: psycopg.Connection, manifest_id: int, lines: list[WasteLine]
) -> tuple[int, int]:
    """Insert waste lines for a manifest. Returns (inserted, skipped)."""
    inserted = skipped = 0
    for line in lines:
        code = derive_waste_code(line.description)
        if not code:
            skipped += 1
            continue
        reference_data.ensure_waste_type(
            conn, code, line.description,
            hazardous=has_hazard_mark(line.description) or has_hazard_mark(code),
        )
        class_code = reference_data.resolve_class_code(conn, line.waste_class)
        unit_code = reference_data.resolve_unit_code(conn, line.unit)
        if unit_code is None:
            unit_code = reference_data.waste_type_default_unit(conn, code)
        conn.execute(
            """
            INSERT INTO manifest_waste (
                manifest_id, waste_code, class_code, unit_code, indicated_qty, received_qty
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                manifest_id, code, class_code, unit_code,
                line.indicated_qty if line.indicated_qty is not None else Decimal("0"),
                line.received_qty,
            ),
        )
        inserted += 1
    return inserted, skipped


def _normalize_steps(
    conn: psycopg.Connection, m: ManifestRecord, threshold: float
) -> NormalizeOutcome:
    manifest_type_id = reference_data.ensure_manifest_type(conn, m.manifest_type)
    status_id = reference_data.ensure_status(conn, m.status)
    treatment_id = reference_data.ensure_treatment(conn, m.treatment)

    ids: dict[str, int] = {}
    missing: list[str] = []
    for role, party in m.parties():
        entity_id = resolve_entity_id(conn, party.tax_id)
        if entity_id is None:
            missing.append(f"{role}={party.tax_id_digits or '<blank>'}")
        else:
            ids[role] = entity_id
    if missing:
        raise MissingEntityError(
            f"Missing entity for manifest {m.manifest_number}: {', '.join(missing)}. "
            "Run stakeholder enrichment first."
        )

    for role, entity_id in ids.items():
        ensure_entity_role(conn, entity_id, role)

    emission_resp_id = ensure_responsible(
        conn, ids[ROLE_GENERATOR], RESPONSIBLE_EMISSION, m.emission_responsible
    )
    receipt_resp_id = None
    if trim(m.receipt_responsible):
        receipt_resp_id = ensure_responsible(
            conn, ids[ROLE_RECEIVER], RESPONSIBLE_RECEIPT, m.receipt_responsible
        )

    manifest_id, inserted = upsert_manifest(
        conn, m,
        manifest_type_id=manifest_type_id,
        status_id=status_id,
        treatment_id=treatment_id,
        generator_id=ids[ROLE_GENERATOR],
        transporter_id=ids[ROLE_TRANSPORTER],
        receiver_id=ids[ROLE_RECEIVER],
        emission_responsible_id=emission_resp_id,
        receipt_responsible_id=receipt_resp_id,
    )

    ensure_vehicle_and_driver(conn, ids[ROLE_TRANSPORTER], m.transporter, threshold)

    outcome = NormalizeOutcome(manifest_id=manifest_id, inserted=inserted)
    if inserted:
        outcome.waste_lines_inserted, outcome.waste_lines_skipped = insert_waste_lines(
            conn, manifest_id, m.waste_lines
        )
    return outcome


def normalize_and_persist(
    conn: psycopg.Connection,
    record: ManifestRecord,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> NormalizeOutcome:
    """Normalize one manifest atomically.

    Raises:
        MissingEntityError: a counterparty has not been enriched.
        NormalizationError: any other failure; the transaction is rolled back.
    """
    try:
        outcome = _normalize_steps(conn, record, similarity_threshold)
        conn.commit()
        return outcome
    except MtrEtlError:
        conn.rollback()
        raise
    except Exception as exc:
        conn.rollback()
        raise NormalizationError(str(exc) or type(exc).__name__) from exc


# ---------------------------------------------------------------------------
# History / quarantine
# ---------------------------------------------------------------------------

def _digit_columns(m: ManifestRecord) -> tuple[str, str, str]:
    return (
        m.generator.tax_id_digits,
        m.transporter.tax_id_digits,
        m.receiver.tax_id_digits,
    )


def archive_to_history(conn: psycopg.Connection, staged: StagedManifest) -> None:
    """Copy the staged record to mtr_history and remove it from the working set."""
    m = staged.record
    try:
        conn.execute(
            """
            INSERT INTO mtr_history (
                manifest_number, generator_tax_id, transporter_tax_id, receiver_tax_id,
                payload, created_by, staged_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            """,
            (m.manifest_number, *_digit_columns(m), Jsonb(staged.payload()),
             staged.created_by, staged.created_at),
        )
        conn.execute("DELETE FROM mtr_staged WHERE manifest_number = %s", (m.manifest_number,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def quarantine(conn: psycopg.Connection, staged: StagedManifest, error: BaseException | str) -> None:
    """Write the staged record and error to mtr_quarantine and remove it from the working set."""
    m = staged.record
    try:
        conn.execute(
            """
            INSERT INTO mtr_quarantine (
                manifest_number, generator_tax_id, transporter_tax_id, receiver_tax_id,
                payload, error_description, created_by, staged_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (m.manifest_number, *_digit_columns(m), Jsonb(staged.payload()),
             truncate_error(str(error)), staged.created_by, staged.created_at),
        )
        conn.execute("DELETE FROM mtr_staged WHERE manifest_number = %s", (m.manifest_number,))
        conn.commit()
    except Exception:
        conn.rollback()
        raise


# ---------------------------------------------------------------------------
# Batch loop
# ---------------------------------------------------------------------------

def process_staged(
    conn: psycopg.Connection,
    staged: StagedManifest,
    counters: NormalizeCounters,
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
) -> bool:
    """Normalize one staged manifest and move it out of the working set.

    A failed normalization is quarantined. A manifest that was persisted
    but could not be moved to history stays staged and is not quarantined.

    Returns False only when the row could not be moved anywhere (it is
    still staged).
    """
    number = staged.manifest_number
    try:
        outcome = normalize_and_persist(conn, staged.record, similarity_threshold)
    except Exception as exc:
        counters.errors += 1
        counters.warnings.append(f"{number}: {exc}")
        log.warning("ERROR %s: %s", number, exc)
        try:
            quarantine(conn, staged, exc)
            counters.quarantined += 1
        except Exception as q_exc:
            counters.quarantine_write_failures += 1
            log.error("FAILED to persist error for %s: %s", number, q_exc)
            return False
        return True

    counters.processed += 1
    if outcome.inserted:
        counters.manifests_inserted += 1
    else:
        counters.manifests_updated += 1
    counters.waste_lines_inserted += outcome.waste_lines_inserted
    counters.waste_lines_skipped += outcome.waste_lines_skipped

    try:
        archive_to_history(conn, staged)
    except Exception as exc:
        counters.history_move_failures += 1
        counters.warnings.append(f"{number}: history move failed: {exc}")
        log.error("FAILED to move %s to history: %s", number, exc)
        return False
    return True


def run_normalization(
    conn: psycopg.Connection,
    settings: MtrSettings,
    counters: NormalizeCounters,
    progress_every: int = 10,
) -> None:
    """Drain (or take one batch of) the working set into the warehouse."""
    stuck: list[str] = []
    every = max(1, progress_every)
    while True:
        batch = read_staged_batch(conn, settings.batch_size, exclude=stuck)
        if not batch:
            if counters.rounds == 0:
                log.info("No pending MTRs to normalize.")
            break
        counters.rounds += 1
        log.info("Round %d: fetched %d record(s).", counters.rounds, len(batch))
        for i, staged in enumerate(batch, start=1):
            if not process_staged(conn, staged, counters, settings.similarity_threshold):
                stuck.append(staged.manifest_number)
            if i % every == 0 or i == len(batch):
                log.info(
                    "Progress %d/%d this round; total processed=%d, errors=%d.",
                    i, len(batch), counters.processed, counters.errors,
                )
        if not settings.drain:
            break
    log.info(
        "Completed. ok=%d, errors=%d, rounds=%d.",
        counters.processed, counters.errors, counters.rounds,
    )
