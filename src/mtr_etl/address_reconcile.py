"""mtr_etl.address_reconcile

Per-unit address reconciliation for organization stakeholders.

Each round takes stakeholders with a 14-digit tax id whose address is not
yet verified, asks the partner endpoint for every operating unit of that
tax id, dedupes the results on ``unit_code|tax_id`` (last seen wins) and
upserts them into ``entity_unit_address``. Tax ids that answered (even
with zero partners) are marked verified; lookup failures stay pending.

The loop stops after a round that resolves nothing, or at max_rounds.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Iterable

import psycopg
import requests

from mtr_etl.normalize import normalize_space, only_digits
from mtr_etl.settings import AddressSettings
from mtr_etl.shared import AddressCounters, FetchError, FetchTimeoutError, PartnerLookupError

log = logging.getLogger(__name__)

PARTNER_URL = "https://mtr.sinir.gov.br/api/mtr/consultaParceiro/J/{cnpj}"
DEFAULT_PARTNER_NAME = "SINIR PARCEIRO"


@dataclass(frozen=True)
class PartnerAddress:
    unit_code: str
    tax_id: str
    name: str
    address: str

    @property
    def key(self) -> str:
        return f"{self.unit_code}|{self.tax_id}"


def parse_partner_payload(payload: Any, cnpj: str = "") -> list[PartnerAddress]:
    """Partner addresses from the endpoint's JSON body.

    Entries are grouped by partner code (first entry wins); entries without
    a 14-digit CNPJ or with a blank address are skipped.

    Raises:
        PartnerLookupError: the body carries the error flag or is malformed.
    """
    if not isinstance(payload, dict):
        raise PartnerLookupError(f"unexpected partner response for {cnpj}")
    if payload.get("erro"):
        raise PartnerLookupError(
            f"partner lookup failed for {cnpj}: {payload.get('mensagem') or 'error flag set'}"
        )

    by_code: dict[str, dict[str, Any]] = {}
    for entry in payload.get("objetoResposta") or []:
        if not isinstance(entry, dict) or entry.get("parCodigo") is None:
            continue
        by_code.setdefault(str(entry["parCodigo"]), entry)

    out: list[PartnerAddress] = []
    for code, entry in by_code.items():
        tax_id = only_digits(str(entry.get("jurCnpj") or ""))
        address = normalize_space(entry.get("paeEndereco"))
        if len(tax_id) != 14 or not address:
            continue
        out.append(PartnerAddress(
            unit_code=code,
            tax_id=tax_id,
            name=normalize_space(entry.get("parDescricao")) or DEFAULT_PARTNER_NAME,
            address=address,
        ))
    return out


def fetch_partners(
    session: requests.Session,
    cnpj: str,
    timeout: float = 60.0,
    url_template: str = PARTNER_URL,
) -> list[PartnerAddress]:
    """Query the partner endpoint for one organization tax id.

    Zero partners is a valid empty result. Transport failures raise
    FetchError / FetchTimeoutError; an error-flagged body raises
    PartnerLookupError.
    """
    url = url_template.format(cnpj=only_digits(cnpj))
    try:
        resp = session.get(url, timeout=timeout)
    except requests.Timeout as exc:
        raise FetchTimeoutError(f"timeout after {timeout}s fetching {url}") from exc
    except requests.RequestException as exc:
        raise FetchError(f"network error fetching {url}: {exc}") from exc
    if not 200 <= resp.status_code < 300:
        raise FetchError(f"HTTP {resp.status_code} fetching {url}")
    try:
        payload = resp.json()
    except ValueError as exc:
        raise PartnerLookupError(f"non-JSON partner response for {cnpj}") from exc
    return parse_partner_payload(payload, cnpj)


def resolve_addresses(results: Iterable[Iterable[PartnerAddress]]) -> list[PartnerAddress]:
    """Flatten per-tax-id results, deduping on unit_code|tax_id (last wins)."""
    merged: dict[str, PartnerAddress] = {}
    for partners in results:
        for p in partners:
            merged[p.key] = p
    return list(merged.values())


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def read_unverified_tax_ids(conn: psycopg.Connection, limit: int) -> list[str]:
    rows = conn.execute(
        """
        SELECT DISTINCT regexp_replace(tax_id, '[^0-9]', '', 'g') AS digits
        FROM stakeholder
        WHERE NOT address_verified
          AND length(regexp_replace(tax_id, '[^0-9]', '', 'g')) = 14
        ORDER BY digits
        LIMIT %s
        """,
        (limit,),
    ).fetchall()
    conn.commit()
    return [r[0] for r in rows]


def persist_addresses(
    conn: psycopg.Connection,
    addresses: list[PartnerAddress],
    verified_tax_ids: list[str],
) -> int:
    """Upsert addresses and mark tax ids verified in one transaction."""
    try:
        if addresses:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO entity_unit_address (unit_code, tax_id, name, address)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (unit_code, tax_id) DO UPDATE SET
                        name       = EXCLUDED.name,
                        address    = EXCLUDED.address,
                        updated_at = now()
                    """,
                    [(a.unit_code, a.tax_id, a.name, a.address) for a in addresses],
                )
        if verified_tax_ids:
            conn.execute(
                """
                UPDATE stakeholder
                SET address_verified = true,
                    last_modified_by = 'system', last_modified_at = now()
                WHERE regexp_replace(tax_id, '[^0-9]', '', 'g') = ANY(%s::text[])
                """,
                (verified_tax_ids,),
            )
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    return len(addresses)


# ---------------------------------------------------------------------------
# Round loop
# ---------------------------------------------------------------------------

def run_address_reconciliation(
    conn: psycopg.Connection,
    session: requests.Session,
    settings: AddressSettings,
    counters: AddressCounters,
    timeout: float = 60.0,
    max_workers: int = 10,
) -> None:
    while counters.rounds < settings.max_rounds:
        tax_ids = read_unverified_tax_ids(conn, settings.batch_size)
        if not tax_ids:
            if counters.rounds == 0:
                log.info("No stakeholders pending address verification.")
            break
        counters.rounds += 1
        counters.tax_ids_queried += len(tax_ids)

        def lookup(cnpj: str) -> tuple[str, list[PartnerAddress] | None, Exception | None]:
            try:
                return cnpj, fetch_partners(session, cnpj, timeout), None
            except (FetchError, PartnerLookupError) as exc:
                return cnpj, None, exc

        answered: list[str] = []
        results: list[list[PartnerAddress]] = []
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            for cnpj, partners, exc in executor.map(lookup, tax_ids):
                if exc is not None:
                    counters.lookup_errors += 1
                    counters.warnings.append(f"{cnpj}: {exc}")
                    log.warning("partner lookup failed for %s: %s", cnpj, exc)
                    continue
                answered.append(cnpj)
                results.append(partners or [])

        addresses = resolve_addresses(results)
        counters.addresses_resolved += len(addresses)
        counters.addresses_persisted += persist_addresses(conn, addresses, answered)
        log.info(
            "Round %d: %d tax id(s) queried, %d address(es) resolved, %d error(s).",
            counters.rounds, len(tax_ids), len(addresses), counters.lookup_errors,
        )
        if not addresses:
            break
    log.info(
        "Address reconciliation completed. rounds=%d persisted=%d errors=%d.",
        counters.rounds, counters.addresses_persisted, counters.lookup_errors,
    )
