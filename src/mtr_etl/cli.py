"""mtr_etl.cli

Unified CLI entrypoint for the MTR pipeline.

Modes (--mode):
  ref_load       seed reference vocabularies from JSON files
  stakeholder    enrich stakeholders into canonical entities
  mtr_setup      build window strategies and enqueue report URLs
  mtr_process    claim/fetch/parse/stage one batch of report jobs
  mtr_normalize  normalize staged manifests into the warehouse
  address        reconcile per-unit addresses of organizations

Usage:
    python -m mtr_etl.cli --mode ref_load --db-dsn "$DB_DSN" \\
        --data-dir data/reference

    python -m mtr_etl.cli --mode mtr_setup --db-dsn "$DB_DSN"

    python -m mtr_etl.cli --mode mtr_process --db-dsn "$DB_DSN" \\
        --max-workers 10 --archive-dir artifacts/reports_raw

    python -m mtr_etl.cli --mode stakeholder --db-dsn "$DB_DSN" \\
        --registry-policy strict --no-drain
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from datetime import datetime
from pathlib import Path

import click

from mtr_etl.address_reconcile import run_address_reconciliation
from mtr_etl.enrich_stakeholder import run_enrichment
from mtr_etl.harvest_mtr import LocalArchiver, NullArchiver, run_process_batch, run_setup
from mtr_etl.header_aliases import load_header_aliases
from mtr_etl.normalize_mtr import run_normalization
from mtr_etl.reference_data import run_reference_load
from mtr_etl.registry_client import RegistryClient, RegistryThrottle
from mtr_etl.report_fetcher import build_session
from mtr_etl.settings import VALID_REGISTRY_POLICIES, load_settings
from mtr_etl.shared import (
    AddressCounters,
    EnrichmentCounters,
    HarvestCounters,
    NormalizeCounters,
    ReferenceCounters,
    connect,
    write_run_report,
)

MODES = ["ref_load", "stakeholder", "mtr_setup", "mtr_process", "mtr_normalize", "address"]


def _error_count(mode: str, counters) -> int:
    if mode == "mtr_process":
        return counters.jobs_failed
    if mode == "stakeholder":
        return counters.errors
    if mode == "mtr_normalize":
        return counters.errors + counters.quarantine_write_failures + counters.history_move_failures
    if mode == "address":
        return counters.lookup_errors
    return 0


@click.command()
@click.option(
    "--mode",
    type=click.Choice(MODES),
    required=True,
    help="Pipeline stage to run",
)
@click.option("--db-dsn", required=True, envvar="MTR_ETL_DB_DSN", help="PostgreSQL DSN")
@click.option("--config-path", default=None, type=click.Path(exists=True), help="Override config/pipeline.yml")
@click.option("--aliases-path", default=None, type=click.Path(exists=True), help="[mtr_process] Override config/header_aliases.yml")
@click.option("--batch-size", default=None, type=int, help="Rows/jobs per round")
@click.option("--max-workers", default=None, type=int, help="Worker pool size")
@click.option("--drain/--no-drain", default=None, help="[stakeholder|mtr_normalize] Loop until nothing is pending")
@click.option(
    "--registry-policy",
    default=None,
    type=click.Choice(list(VALID_REGISTRY_POLICIES)),
    help="[stakeholder] Behavior when registry data is unavailable",
)
@click.option("--reclaim-stale-minutes", default=None, type=int, help="[mtr_process] Reset PROCESSING jobs locked longer than this")
@click.option("--archive-dir", default=None, type=click.Path(), help="[mtr_process] Save downloaded reports under this directory")
@click.option("--data-dir", default=None, type=click.Path(), help="[ref_load] Directory of reference JSON files")
@click.option(
    "--today",
    default=None,
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="[mtr_setup] Reference date; periods end the day before (default: UTC yesterday)",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option("--reports-dir", default="./artifacts/reports", show_default=True, type=click.Path(), help="Where to write the JSON run report")
@click.option("--allow-errors", is_flag=True, default=False, help="Exit 0 even when per-record errors occurred")
@click.option("--verbose", is_flag=True, default=False, help="DEBUG logging")
def main(
    mode: str,
    db_dsn: str,
    config_path: str | None,
    aliases_path: str | None,
    batch_size: int | None,
    max_workers: int | None,
    drain: bool | None,
    registry_policy: str | None,
    reclaim_stale_minutes: int | None,
    archive_dir: str | None,
    data_dir: str | None,
    today: datetime | None,
    run_id: str | None,
    reports_dir: str,
    allow_errors: bool,
    verbose: bool,
) -> None:
    """Unified MTR pipeline CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.utcnow().isoformat()

    settings = load_settings(Path(config_path) if config_path else None).with_overrides(
        batch_size=batch_size,
        max_workers=max_workers,
        drain=drain,
        registry_policy=registry_policy,
        reclaim_stale_minutes=reclaim_stale_minutes,
        data_dir=data_dir,
    )
    click.echo(f"[{run_id}] Starting {mode} run")

    options: dict = {}
    if mode == "ref_load":
        counters = ReferenceCounters()
        options["data_dir"] = str(settings.reference_data_dir)
        with connect(db_dsn) as conn:
            run_reference_load(conn, settings.reference_data_dir, counters)

    elif mode == "stakeholder":
        counters = EnrichmentCounters()
        sh = settings.stakeholder
        options.update(registry_policy=sh.registry_policy, drain=sh.drain, batch_size=sh.batch_size)
        session = build_session(settings.http.user_agent, settings.processing.max_workers)
        client = RegistryClient(session, timeout=settings.http.registry_timeout_seconds)
        throttle = RegistryThrottle(every=sh.throttle_every, pause_seconds=sh.throttle_pause_seconds)
        run_enrichment(
            db_dsn, client, sh, counters,
            max_workers=settings.processing.max_workers,
            throttle=throttle,
        )
        click.echo(
            f"[{run_id}] Completed. Processed={counters.processed}, Errors={counters.errors}, "
            f"PF={counters.pf}, PJ={counters.pj}, API hits={counters.api_hits}"
        )

    elif mode == "mtr_setup":
        counters = HarvestCounters()
        ref_day = today.date() if today else None
        options["today"] = ref_day.isoformat() if ref_day else None
        with connect(db_dsn) as conn:
            run_setup(conn, counters, today=ref_day, epoch_start=settings.epoch_start)

    elif mode == "mtr_process":
        counters = HarvestCounters()
        aliases = load_header_aliases(Path(aliases_path) if aliases_path else None)
        archiver = LocalArchiver(base_dir=Path(archive_dir)) if archive_dir else NullArchiver()
        options.update(
            archive_dir=archive_dir,
            header_aliases_version=aliases.version,
            header_aliases_hash=aliases.yaml_hash,
        )
        session = build_session(settings.http.user_agent, settings.processing.max_workers)
        run_process_batch(db_dsn, session, settings, counters, aliases=aliases, archiver=archiver)

    elif mode == "mtr_normalize":
        counters = NormalizeCounters()
        options.update(drain=settings.mtr.drain, batch_size=settings.mtr.batch_size)
        with connect(db_dsn) as conn:
            run_normalization(
                conn, settings.mtr, counters,
                progress_every=settings.processing.progress_every,
            )
        click.echo(
            f"[{run_id}] Completed. OK={counters.processed}, Errors={counters.errors}, "
            f"Rounds={counters.rounds}"
        )

    else:
        counters = AddressCounters()
        options.update(batch_size=settings.address.batch_size, max_rounds=settings.address.max_rounds)
        session = build_session(settings.http.user_agent, settings.processing.max_workers)
        with connect(db_dsn) as conn:
            run_address_reconciliation(
                conn, session, settings.address, counters,
                timeout=settings.http.partner_timeout_seconds,
                max_workers=settings.processing.max_workers,
            )

    report_path = write_run_report(
        run_id, started_at, mode, options, counters, reports_dir=Path(reports_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    click.echo(json.dumps(counters.to_dict(), indent=2, default=str))

    errors = _error_count(mode, counters)
    if errors > 0 and not allow_errors:
        click.echo(f"[{run_id}] {errors} error(s), exiting non-zero", err=True)
        sys.exit(1)
    click.echo(f"[{run_id}] Done.")


if __name__ == "__main__":
    main()
