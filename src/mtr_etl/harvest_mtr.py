"""mtr_etl.harvest_mtr

Manifest harvesting: queue setup and the fetch/parse/stage batch processor.

Setup (mode mtr_setup):
  For every stakeholder, build the monthly window strategy from its last
  period_end, enqueue the report URLs and record the new period.

Process batch (mode mtr_process):
  1. Optionally reclaim stale PROCESSING jobs
  2. List up to batch_size PENDING jobs
  3. On a bounded thread pool, per job:
       claim -> fetch -> archive (optional) -> parse -> stage manifests
       -> register counterparties -> complete
     Any failure records a harvest_error row and marks the job ERROR.
  4. Per-job counters are merged by the main thread; the pool drains
     before the batch is considered complete.
"""

from __future__ import annotations

import logging
import os
import socket
import traceback
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Iterable, Protocol

import psycopg
import requests
from psycopg.types.json import Jsonb

from mtr_etl import report_fetcher, spreadsheet_parser, work_queue
from mtr_etl.header_aliases import HeaderAliases
from mtr_etl.records import FetchJob, ManifestRecord, Stakeholder
from mtr_etl.settings import PipelineSettings
from mtr_etl.shared import HarvestCounters, ThreadConnections
from mtr_etl.window_strategy import EPOCH_START, archive_file_name, build_strategy

log = logging.getLogger(__name__)

SOURCE_PROCESSOR = "processor"


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


# ---------------------------------------------------------------------------
# Raw report archive
# ---------------------------------------------------------------------------

class Archiver(Protocol):
    def archive(self, unit_id: str, url: str, content: bytes) -> str:
        """Return the path the report was written to."""
        ...


@dataclass
class LocalArchiver:
    """Write downloaded reports under base_dir/<unit_id>/."""

    base_dir: Path

    def archive(self, unit_id: str, url: str, content: bytes) -> str:
        dest = self.base_dir / unit_id / archive_file_name(url, unit_id)
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(content)
        return str(dest)


@dataclass
class NullArchiver:
    """In-memory processing; nothing is written."""

    def archive(self, unit_id: str, url: str, content: bytes) -> str:
        return f"null://{unit_id}/{archive_file_name(url, unit_id)}"


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------

def list_stakeholders(conn: psycopg.Connection) -> list[Stakeholder]:
    rows = conn.execute(
        """
        SELECT unit_id, tax_id, name, address_verified, period_start, period_end
        FROM stakeholder
        ORDER BY unit_id, tax_id
        """
    ).fetchall()
    return [Stakeholder(*r) for r in rows]


def update_stakeholder_period(
    conn: psycopg.Connection, sh: Stakeholder, start: date, end: date
) -> None:
    conn.execute(
        """
        UPDATE stakeholder
        SET period_start = %s, period_end = %s,
            last_modified_by = 'system', last_modified_at = now()
        WHERE unit_id = %s AND tax_id = %s
        """,
        (start, end, sh.unit_id, sh.tax_id),
    )


def run_setup(
    conn: psycopg.Connection,
    counters: HarvestCounters,
    today: date | None = None,
    epoch_start: date = EPOCH_START,
) -> None:
    """Enqueue report URLs for every stakeholder and advance their periods."""
    stakeholders = list_stakeholders(conn)
    conn.commit()
    counters.stakeholders_read = len(stakeholders)
    for sh in stakeholders:
        strategy = build_strategy(sh.unit_id, sh.period_end, today=today, epoch_start=epoch_start)
        if not strategy.periods:
            continue
        counters.periods_generated += len(strategy.periods)
        jobs = [FetchJob(url=u, unit_id=sh.unit_id) for u in strategy.urls]
        counters.jobs_enqueued += work_queue.enqueue(conn, jobs)
        update_stakeholder_period(conn, sh, strategy.period_start, strategy.period_end)
        conn.commit()
    log.info(
        "Setup complete. Generated/ensured loads for %d stakeholder(s).",
        len(stakeholders),
    )


# ---------------------------------------------------------------------------
# Staging
# ---------------------------------------------------------------------------

def _stage_one(conn: psycopg.Connection, m: ManifestRecord, created_by: str) -> int:
    g, t, r = m.generator, m.transporter, m.receiver
    vehicle = t.vehicle
    conn.execute(
        """
        INSERT INTO mtr_staged (
            manifest_number, manifest_type, emission_responsible, has_complementary,
            provisional_number, emission_date, receipt_date, status,
            receipt_responsible, justification, treatment, cdf_number,
            generator_unit_id, generator_tax_id, generator_name, generator_note,
            transporter_unit_id, transporter_tax_id, transporter_name, transporter_note,
            transporter_driver, transporter_plate,
            receiver_unit_id, receiver_tax_id, receiver_name, receiver_note,
            created_by
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
                %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (manifest_number) DO UPDATE SET
            manifest_type        = EXCLUDED.manifest_type,
            emission_responsible = EXCLUDED.emission_responsible,
            has_complementary    = EXCLUDED.has_complementary,
            provisional_number   = EXCLUDED.provisional_number,
            emission_date        = EXCLUDED.emission_date,
            receipt_date         = EXCLUDED.receipt_date,
            status               = EXCLUDED.status,
            receipt_responsible  = EXCLUDED.receipt_responsible,
            justification        = EXCLUDED.justification,
            treatment            = EXCLUDED.treatment,
            cdf_number           = EXCLUDED.cdf_number,
            generator_unit_id    = EXCLUDED.generator_unit_id,
            generator_tax_id     = EXCLUDED.generator_tax_id,
            generator_name       = EXCLUDED.generator_name,
            generator_note       = EXCLUDED.generator_note,
            transporter_unit_id  = EXCLUDED.transporter_unit_id,
            transporter_tax_id   = EXCLUDED.transporter_tax_id,
            transporter_name     = EXCLUDED.transporter_name,
            transporter_note     = EXCLUDED.transporter_note,
            transporter_driver   = EXCLUDED.transporter_driver,
            transporter_plate    = EXCLUDED.transporter_plate,
            receiver_unit_id     = EXCLUDED.receiver_unit_id,
            receiver_tax_id      = EXCLUDED.receiver_tax_id,
            receiver_name        = EXCLUDED.receiver_name,
            receiver_note        = EXCLUDED.receiver_note
        """,
        (
            m.manifest_number, m.manifest_type, m.emission_responsible, m.has_complementary,
            m.provisional_number, m.emission_date, m.receipt_date, m.status,
            m.receipt_responsible, m.justification, m.treatment, m.cdf_number,
            g.unit_id, g.tax_id, g.name, g.note,
            t.unit_id, t.tax_id, t.name, t.note,
            vehicle.driver_name if vehicle else None,
            vehicle.plate if vehicle else None,
            r.unit_id, r.tax_id, r.name, r.note,
            created_by,
        ),
    )
    conn.execute(
        "DELETE FROM mtr_staged_waste_line WHERE manifest_number = %s",
        (m.manifest_number,),
    )
    with conn.cursor() as cur:
        cur.executemany(
            """
            INSERT INTO mtr_staged_waste_line (
                manifest_number, line_no, description, internal_code,
                internal_description, waste_class, unit, indicated_qty, received_qty
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            [
                (
                    m.manifest_number, line_no, w.description, w.internal_code,
                    w.internal_description, w.waste_class, w.unit,
                    w.indicated_qty, w.received_qty,
                )
                for line_no, w in enumerate(m.waste_lines, start=1)
            ],
        )
    return len(m.waste_lines)


def stage_manifests(
    conn: psycopg.Connection,
    records: Iterable[ManifestRecord],
    created_by: str = "system",
) -> tuple[int, int]:
    """Upsert parsed manifests into the working set. Returns (manifests, lines).

    A re-harvested manifest that is still staged replaces its previous
    header fields and waste lines.
    """
    manifests = lines = 0
    try:
        for m in records:
            lines += _stage_one(conn, m, created_by)
            manifests += 1
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return manifests, lines


def register_counterparties(
    conn: psycopg.Connection,
    records: Iterable[ManifestRecord],
    job_unit_id: str,
    created_by: str = "system",
) -> int:
    """Insert-if-absent every party whose unit differs from the job's unit."""
    distinct: dict[str, tuple[str, str, str]] = {}
    for m in records:
        for _, party in m.parties():
            if party.unit_id == job_unit_id or not party.unit_id:
                continue
            key = f"{party.unit_id}|{party.tax_id}|{party.name}"
            distinct.setdefault(key, (party.unit_id, party.tax_id, party.name))
    inserted = 0
    try:
        with conn.cursor() as cur:
            for unit_id, tax_id, name in distinct.values():
                cur.execute(
                    """
                    INSERT INTO stakeholder (unit_id, tax_id, name, created_by)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (unit_id, tax_id) DO NOTHING
                    """,
                    (unit_id, tax_id, name, created_by),
                )
                inserted += cur.rowcount
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return inserted


def record_harvest_error(
    conn: psycopg.Connection,
    source: str,
    reference: str,
    exc: BaseException,
    extra: dict | None = None,
) -> None:
    conn.execute(
        """
        INSERT INTO harvest_error (source, reference, message, stack, extra)
        VALUES (%s, %s, %s, %s, %s)
        """,
        (
            source,
            reference,
            str(exc) or type(exc).__name__,
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            Jsonb(extra) if extra else None,
        ),
    )
    conn.commit()


# ---------------------------------------------------------------------------
# Batch processor
# ---------------------------------------------------------------------------

def _safe_rollback(conn: psycopg.Connection) -> None:
    try:
        conn.rollback()
    except psycopg.Error as exc:
        log.debug("rollback failed: %s", exc)


def process_job(
    conn: psycopg.Connection,
    session: requests.Session,
    job: FetchJob,
    worker_id: str,
    aliases: HeaderAliases | None = None,
    timeout: float = 180.0,
    archiver: Archiver | None = None,
) -> HarvestCounters:
    """Claim and process one fetch job. Never raises for per-job failures.

    A claim that fails on the database leaves the job PENDING and counts
    as failed.
    """
    local = HarvestCounters()
    try:
        claimed = work_queue.claim(conn, job.url, worker_id)
    except psycopg.Error as exc:
        _safe_rollback(conn)
        local.jobs_failed += 1
        local.warnings.append(f"{job.url}: claim failed: {exc}")
        log.error("FAILED to claim %s: %s", job.url, exc)
        return local
    if not claimed:
        local.jobs_skipped_claimed += 1
        log.debug("Skipped (already claimed): %s", job.url)
        return local
    local.jobs_claimed += 1

    try:
        content = report_fetcher.fetch(session, job.url, timeout)
        if archiver is not None:
            path = archiver.archive(job.unit_id, job.url, content)
            if not path.startswith("null://"):
                local.files_archived += 1
        records = spreadsheet_parser.parse(content, aliases)
        local.manifests_parsed += len(records)
        if not records:
            log.info("No MTRs found for %s", job.url)
        else:
            staged, lines = stage_manifests(conn, records)
            local.manifests_staged += staged
            local.waste_lines_staged += lines
            local.stakeholders_discovered += register_counterparties(conn, records, job.unit_id)
        work_queue.complete(conn, job.url)
        local.jobs_completed += 1
    except Exception as exc:
        conn.rollback()
        local.jobs_failed += 1
        local.warnings.append(f"{job.url}: {exc}")
        log.error("ERROR while processing %s: %s", job.url, exc)
        try:
            record_harvest_error(conn, SOURCE_PROCESSOR, job.url, exc)
            work_queue.fail(conn, job.url, str(exc) or type(exc).__name__)
        except psycopg.Error as db_exc:
            conn.rollback()
            log.error("FAILED to persist error state for %s: %s", job.url, db_exc)
    return local


def run_process_batch(
    db_dsn: str,
    session: requests.Session,
    settings: PipelineSettings,
    counters: HarvestCounters,
    aliases: HeaderAliases | None = None,
    archiver: Archiver | None = None,
    worker_id: str | None = None,
) -> None:
    """Process one batch of PENDING jobs on a bounded worker pool."""
    worker_id = worker_id or default_worker_id()
    with ThreadConnections(db_dsn) as pool:
        main_conn = pool.get()
        if settings.reclaim_stale_minutes:
            counters.jobs_reclaimed += work_queue.reclaim_stale(
                main_conn, timedelta(minutes=settings.reclaim_stale_minutes)
            )
        batch = work_queue.list_pending(main_conn, settings.processing.batch_size)
        counters.jobs_listed = len(batch)
        if not batch:
            log.info("No pending loads found.")
            return

        log.info(
            "Processing %d load(s) with max_workers=%d as %s",
            len(batch), settings.processing.max_workers, worker_id,
        )
        def task(job: FetchJob) -> HarvestCounters:
            return process_job(
                pool.get(), session, job, worker_id,
                aliases=aliases,
                timeout=settings.http.report_timeout_seconds,
                archiver=archiver,
            )

        every = max(1, settings.processing.progress_every)
        done = 0
        with ThreadPoolExecutor(max_workers=settings.processing.max_workers) as executor:
            futures = [executor.submit(task, job) for job in batch]
            for future in as_completed(futures):
                counters.merge(future.result())
                done += 1
                if done % every == 0 or done == len(batch):
                    log.info(
                        "Progress: %d/%d done (completed=%d, failed=%d, skipped=%d).",
                        done, len(batch), counters.jobs_completed,
                        counters.jobs_failed, counters.jobs_skipped_claimed,
                    )
        log.info("Processing completed.")
