"""mtr_etl.shared

Shared utilities used by the harvesting, enrichment and normalization
modes.  Includes the exception taxonomy, per-run counters, DB connection
helper and report-writing support.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime
from pathlib import Path
from typing import Any

import psycopg


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class MtrEtlError(Exception):
    """Base class for pipeline errors."""


class FetchError(MtrEtlError):
    """Raised when a report/partner download returns a non-2xx status or fails in transport."""


class FetchTimeoutError(FetchError, TimeoutError):
    """Raised when no response arrives within the per-request timeout."""


class ParseError(MtrEtlError):
    """Raised when a spreadsheet cannot be read at all."""


class MissingEntityError(MtrEtlError):
    """Raised when a manifest references a counterparty that was never enriched."""


class RegistryRequiredError(MtrEtlError):
    """Raised (strict policy only) when registry data is mandatory but unavailable."""


class NormalizationError(MtrEtlError):
    """Raised for any other failure inside the manifest upsert transaction."""


class PartnerLookupError(MtrEtlError):
    """Raised when the partner endpoint answers with its error flag set."""


class SettingsValidationError(MtrEtlError, ValueError):
    """Raised when config/pipeline.yml fails schema validation."""


class HeaderAliasValidationError(MtrEtlError, ValueError):
    """Raised when config/header_aliases.yml fails schema validation."""


# ---------------------------------------------------------------------------
# Counters
# ---------------------------------------------------------------------------

@dataclass
class _Counters:
    warnings: list[str] = field(default_factory=list)

    def merge(self, other: "_Counters") -> None:
        """Add other's numeric counters into self (per-task accumulators)."""
        for f in fields(self):
            if f.name == "warnings":
                self.warnings.extend(other.warnings)
                continue
            mine = getattr(self, f.name)
            if isinstance(mine, int) and not isinstance(mine, bool):
                setattr(self, f.name, mine + getattr(other, f.name))

    def to_dict(self) -> dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


@dataclass
class HarvestCounters(_Counters):
    stakeholders_read: int = 0
    periods_generated: int = 0
    jobs_enqueued: int = 0
    jobs_reclaimed: int = 0
    jobs_listed: int = 0
    jobs_claimed: int = 0
    jobs_skipped_claimed: int = 0
    jobs_completed: int = 0
    jobs_failed: int = 0
    files_archived: int = 0
    manifests_parsed: int = 0
    manifests_staged: int = 0
    waste_lines_staged: int = 0
    stakeholders_discovered: int = 0


@dataclass
class EnrichmentCounters(_Counters):
    processed: int = 0
    errors: int = 0
    pf: int = 0
    pj: int = 0
    api_hits: int = 0
    inserted: int = 0
    updated: int = 0
    rounds: int = 0


@dataclass
class NormalizeCounters(_Counters):
    processed: int = 0
    errors: int = 0
    quarantined: int = 0
    quarantine_write_failures: int = 0
    history_move_failures: int = 0
    manifests_inserted: int = 0
    manifests_updated: int = 0
    waste_lines_inserted: int = 0
    waste_lines_skipped: int = 0
    rounds: int = 0


@dataclass
class AddressCounters(_Counters):
    rounds: int = 0
    tax_ids_queried: int = 0
    lookup_errors: int = 0
    addresses_resolved: int = 0
    addresses_persisted: int = 0


@dataclass
class ReferenceCounters(_Counters):
    statuses: int = 0
    manifest_types: int = 0
    treatments: int = 0
    units: int = 0
    classes: int = 0
    waste_types: int = 0
    files_missing: int = 0


# ---------------------------------------------------------------------------
# DB connection
# ---------------------------------------------------------------------------

def connect(db_dsn: str) -> psycopg.Connection:
    """Open a non-autocommit connection; callers commit per logical operation."""
    return psycopg.connect(db_dsn, autocommit=False)


class ThreadConnections:
    """One connection per worker thread, all closed on exit.

    psycopg connections must not be shared between threads mid-transaction,
    so pool workers call get() instead of sharing the main connection.
    """

    def __init__(self, db_dsn: str) -> None:
        self._dsn = db_dsn
        self._local = threading.local()
        self._lock = threading.Lock()
        self._opened: list[psycopg.Connection] = []

    def get(self) -> psycopg.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None or conn.closed:
            conn = connect(self._dsn)
            self._local.conn = conn
            with self._lock:
                self._opened.append(conn)
        return conn

    def close(self) -> None:
        with self._lock:
            for conn in self._opened:
                conn.close()
            self._opened.clear()

    def __enter__(self) -> "ThreadConnections":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    options: dict[str, Any],
    counters: _Counters,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        **options,
        "counters": counters.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
