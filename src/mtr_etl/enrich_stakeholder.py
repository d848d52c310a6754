"""mtr_etl.enrich_stakeholder

Promotes harvested stakeholders into canonical ``entity`` rows.

Per stakeholder:
  1. Classify the digit-only tax id: 11 digits -> individual (F), else
     organization (J).
  2. Organizations are looked up in the company registry. On a miss the
     configured policy decides:
       lenient  proceed with empty address fields
       strict   wait the backoff interval, then raise RegistryRequiredError
  3. Upsert keyed by tax id; the surrogate id and unrelated columns
     (geocode) are preserved on update.

Batches run on a bounded thread pool; every task returns its own counters,
merged by the main thread.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable

import psycopg

from mtr_etl.normalize import PERSON_INDIVIDUAL, normalize_space, only_digits, person_type_for
from mtr_etl.registry_client import RegistryClient, RegistryRecord, RegistryThrottle
from mtr_etl.settings import StakeholderSettings
from mtr_etl.shared import EnrichmentCounters, RegistryRequiredError, ThreadConnections

log = logging.getLogger(__name__)

POLICY_LENIENT = "lenient"
POLICY_STRICT = "strict"

PLACEHOLDER_TAX_IDS = ("", "10", "00000000000", "00000000000000")


@dataclass
class EntityUpsert:
    tax_id: str
    name: str
    person_type: str
    registry: RegistryRecord | None = None
    api_hit: bool = False
    inserted: bool = False
    entity_id: int | None = None

    @property
    def is_individual(self) -> bool:
        return self.person_type == PERSON_INDIVIDUAL


# ---------------------------------------------------------------------------
# Source selection
# ---------------------------------------------------------------------------

def read_source_batch(
    conn: psycopg.Connection,
    limit: int,
    exclude: list[str] | None = None,
) -> list[tuple[str, str]]:
    """(digit-only tax id, name) of stakeholders with no entity yet."""
    rows = conn.execute(
        """
        SELECT DISTINCT ON (d.digits) d.digits, d.name
        FROM (
            SELECT regexp_replace(s.tax_id, '[^0-9]', '', 'g') AS digits, s.name
            FROM stakeholder s
        ) d
        LEFT JOIN entity e ON e.tax_id = d.digits
        WHERE e.id IS NULL
          AND d.digits <> ALL(%s::text[])
          AND d.digits <> ALL(%s::text[])
        ORDER BY d.digits
        LIMIT %s
        """,
        (list(PLACEHOLDER_TAX_IDS), exclude or [], limit),
    ).fetchall()
    conn.commit()
    return [(r[0], r[1]) for r in rows]


# ---------------------------------------------------------------------------
# Enrichment
# ---------------------------------------------------------------------------

def resolve_registry_data(
    tax_id: str,
    name: str,
    client: RegistryClient,
    policy: str = POLICY_LENIENT,
    backoff_seconds: float = 0.0,
    throttle: RegistryThrottle | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> EntityUpsert:
    """Classify tax_id and, for organizations, consult the registry.

    Raises:
        RegistryRequiredError: strict policy and the lookup missed.
    """
    digits = only_digits(tax_id)
    person_type = person_type_for(digits)
    result = EntityUpsert(
        tax_id=digits,
        name=normalize_space(name) or "",
        person_type=person_type,
    )
    if result.is_individual:
        return result

    if throttle is not None:
        throttle.wait()
    record = client.lookup_cnpj(digits)
    if record is None:
        if policy == POLICY_STRICT:
            sleep(backoff_seconds)
            raise RegistryRequiredError(f"registry data unavailable for {digits}")
        return result

    if throttle is not None:
        throttle.on_success()
    result.api_hit = True
    result.registry = record
    legal_name = normalize_space(record.legal_name)
    if legal_name:
        result.name = legal_name
    return result


def upsert_entity(conn: psycopg.Connection, data: EntityUpsert) -> tuple[int, bool]:
    """Insert or update the entity for data.tax_id. Returns (id, inserted).

    Runs inside the caller's transaction.
    """
    reg = data.registry or RegistryRecord()
    row = conn.execute(
        """
        INSERT INTO entity (
            tax_id, name, trade_name, person_type,
            uf, municipality, ibge_municipality_code, postal_code,
            street, street_number, complement, neighborhood,
            size_bracket, activity_start_date,
            primary_activity_code, primary_activity_desc
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        ON CONFLICT (tax_id) DO UPDATE SET
            name                   = EXCLUDED.name,
            trade_name             = EXCLUDED.trade_name,
            uf                     = EXCLUDED.uf,
            municipality           = EXCLUDED.municipality,
            ibge_municipality_code = EXCLUDED.ibge_municipality_code,
            postal_code            = EXCLUDED.postal_code,
            street                 = EXCLUDED.street,
            street_number          = EXCLUDED.street_number,
            complement             = EXCLUDED.complement,
            neighborhood           = EXCLUDED.neighborhood,
            size_bracket           = EXCLUDED.size_bracket,
            activity_start_date    = EXCLUDED.activity_start_date,
            primary_activity_code  = EXCLUDED.primary_activity_code,
            primary_activity_desc  = EXCLUDED.primary_activity_desc,
            updated_at             = now()
        RETURNING id, (xmax = 0) AS inserted
        """,
        (
            data.tax_id, data.name, reg.trade_name, data.person_type,
            reg.uf, reg.municipality, reg.ibge_municipality_code, reg.postal_code,
            reg.street, reg.street_number, reg.complement, reg.neighborhood,
            reg.size_bracket, reg.activity_start_date,
            reg.primary_activity_code, reg.primary_activity_desc,
        ),
    ).fetchone()
    return int(row[0]), bool(row[1])


def enrich(
    conn: psycopg.Connection,
    tax_id: str,
    name: str,
    client: RegistryClient,
    policy: str = POLICY_LENIENT,
    backoff_seconds: float = 0.0,
    throttle: RegistryThrottle | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> EntityUpsert:
    """Resolve registry data and persist the entity in one transaction."""
    result = resolve_registry_data(
        tax_id, name, client,
        policy=policy, backoff_seconds=backoff_seconds,
        throttle=throttle, sleep=sleep,
    )
    try:
        result.entity_id, result.inserted = upsert_entity(conn, result)
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return result


# ---------------------------------------------------------------------------
# Batch loop
# ---------------------------------------------------------------------------

def _enrich_task(
    pool: ThreadConnections,
    tax_id: str,
    name: str,
    client: RegistryClient,
    settings: StakeholderSettings,
    throttle: RegistryThrottle | None,
) -> EnrichmentCounters:
    local = EnrichmentCounters()
    try:
        res = enrich(
            pool.get(), tax_id, name, client,
            policy=settings.registry_policy,
            backoff_seconds=settings.registry_backoff_seconds,
            throttle=throttle,
        )
    except Exception as exc:
        local.errors += 1
        local.warnings.append(f"{tax_id} {name}: {exc}")
        log.warning("ERROR %s %s: %s", tax_id, name, exc)
        return local

    local.processed += 1
    if res.is_individual:
        local.pf += 1
    else:
        local.pj += 1
    if res.api_hit:
        local.api_hits += 1
    if res.inserted:
        local.inserted += 1
    else:
        local.updated += 1
    log.info(
        "%s %s %s - %s %s",
        "PF" if res.is_individual else "PJ",
        "+API" if res.api_hit else "-API",
        "insert" if res.inserted else "update",
        res.tax_id, res.name,
    )
    return local


def run_enrichment(
    db_dsn: str,
    client: RegistryClient,
    settings: StakeholderSettings,
    counters: EnrichmentCounters,
    max_workers: int = 10,
    throttle: RegistryThrottle | None = None,
) -> None:
    """Enrich pending stakeholders; loop until empty when settings.drain."""
    failed: list[str] = []
    with ThreadConnections(db_dsn) as pool:
        main_conn = pool.get()
        while True:
            batch = read_source_batch(main_conn, settings.batch_size, exclude=failed)
            if not batch:
                if counters.rounds == 0:
                    log.info("No pending stakeholders to enrich.")
                break
            counters.rounds += 1
            log.info("Round %d: fetched %d stakeholder(s).", counters.rounds, len(batch))

            with ThreadPoolExecutor(max_workers=max_workers) as executor:
                futures = {
                    executor.submit(
                        _enrich_task, pool, tax_id, name, client, settings, throttle,
                    ): tax_id
                    for tax_id, name in batch
                }
                for future in as_completed(futures):
                    local = future.result()
                    if local.errors:
                        failed.append(futures[future])
                    counters.merge(local)

            log.info(
                "Round %d done: processed=%d errors=%d.",
                counters.rounds, counters.processed, counters.errors,
            )
            if not settings.drain:
                break
