"""Integration tests for stakeholder enrichment.

Requires a real PostgreSQL database (via pytest-postgresql).
The registry client is mocked; no live HTTP.
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from mtr_etl.enrich_stakeholder import (
    POLICY_LENIENT,
    POLICY_STRICT,
    enrich,
    read_source_batch,
    run_enrichment,
)
from mtr_etl.registry_client import RegistryRecord, RegistryThrottle
from mtr_etl.settings import StakeholderSettings
from mtr_etl.shared import EnrichmentCounters, RegistryRequiredError

CNPJ = "11111111000111"
CPF = "12345678901"


def _stakeholder(conn, unit_id: str, tax_id: str, name: str) -> None:
    conn.execute(
        "INSERT INTO stakeholder (unit_id, tax_id, name) VALUES (%s, %s, %s)",
        (unit_id, tax_id, name),
    )
    conn.commit()


def _entity(conn, tax_id: str):
    return conn.execute(
        "SELECT id, name, person_type, uf, municipality, primary_activity_code "
        "FROM entity WHERE tax_id = %s",
        (tax_id,),
    ).fetchone()


def _client(record: RegistryRecord | None = None) -> MagicMock:
    client = MagicMock()
    client.lookup_cnpj.return_value = record
    return client


REGISTRY_HIT = RegistryRecord(
    legal_name="GERADORA LTDA", trade_name="GERADORA", uf="SP",
    municipality="SAO PAULO", primary_activity_code=3811400,
)


class TestEnrich:
    def test_individual_skips_registry(self, conn):
        client = _client()
        res = enrich(conn, "123.456.789-01", " José  Pereira ", client)
        assert res.person_type == "F"
        assert res.inserted is True
        client.lookup_cnpj.assert_not_called()
        row = _entity(conn, CPF)
        assert row[1] == "José Pereira"
        assert row[2] == "F"

    def test_organization_hit_uses_registry_data(self, conn):
        res = enrich(conn, "11.111.111/0001-11", "geradora", _client(REGISTRY_HIT))
        assert res.api_hit is True
        row = _entity(conn, CNPJ)
        assert row[1] == "GERADORA LTDA"
        assert row[3:] == ("SP", "SAO PAULO", 3811400)

    def test_lenient_miss_inserts_without_address(self, conn):
        res = enrich(conn, CNPJ, "Geradora", _client(None), policy=POLICY_LENIENT)
        assert res.api_hit is False
        row = _entity(conn, CNPJ)
        assert row[1] == "Geradora"
        assert row[3] is None and row[4] is None

    def test_strict_miss_waits_then_raises(self, conn):
        sleep = MagicMock()
        with pytest.raises(RegistryRequiredError):
            enrich(conn, CNPJ, "Geradora", _client(None),
                   policy=POLICY_STRICT, backoff_seconds=5, sleep=sleep)
        sleep.assert_called_once_with(5)
        assert _entity(conn, CNPJ) is None

    def test_second_run_updates_and_keeps_id(self, conn):
        first = enrich(conn, CNPJ, "Geradora", _client(None))
        second = enrich(conn, CNPJ, "Geradora", _client(REGISTRY_HIT))
        assert first.inserted is True
        assert second.inserted is False
        assert second.entity_id == first.entity_id
        assert _entity(conn, CNPJ)[1] == "GERADORA LTDA"

    def test_throttle_counts_only_hits(self, conn):
        throttle = RegistryThrottle(every=100, pause_seconds=0)
        enrich(conn, CNPJ, "A", _client(REGISTRY_HIT), throttle=throttle)
        enrich(conn, "22222222000122", "B", _client(None), throttle=throttle)
        assert throttle.successes == 1


class TestSourceBatch:
    def test_excludes_existing_entities_and_placeholders(self, conn):
        _stakeholder(conn, "1", "11.111.111/0001-11", "Geradora")
        _stakeholder(conn, "2", "11111111000111", "Geradora filial")
        _stakeholder(conn, "3", "000.000.000-00", "Placeholder")
        _stakeholder(conn, "4", "10", "Placeholder")
        _stakeholder(conn, "5", "123.456.789-01", "José")
        enrich(conn, CPF, "José", _client())
        batch = read_source_batch(conn, 10)
        assert [tax_id for tax_id, _ in batch] == [CNPJ]

    def test_exclude_list(self, conn):
        _stakeholder(conn, "1", CNPJ, "Geradora")
        assert read_source_batch(conn, 10, exclude=[CNPJ]) == []


class TestRunEnrichment:
    def test_drain_processes_all_and_counts(self, conn, dsn):
        _stakeholder(conn, "1", CNPJ, "Geradora")
        _stakeholder(conn, "2", CPF, "José")
        _stakeholder(conn, "3", "22222222000122", "Outra")
        counters = EnrichmentCounters()
        settings = StakeholderSettings(batch_size=1, drain=True)
        run_enrichment(dsn, _client(REGISTRY_HIT), settings, counters, max_workers=2)
        assert counters.processed == 3
        assert counters.pf == 1
        assert counters.pj == 2
        assert counters.api_hits == 2
        assert counters.inserted == 3
        assert counters.errors == 0
        assert counters.rounds == 3
        assert conn.execute("SELECT count(*) FROM entity").fetchone()[0] == 3

    def test_no_drain_takes_one_batch(self, conn, dsn):
        _stakeholder(conn, "1", CNPJ, "Geradora")
        _stakeholder(conn, "2", CPF, "José")
        counters = EnrichmentCounters()
        run_enrichment(dsn, _client(), StakeholderSettings(batch_size=1, drain=False), counters)
        assert counters.processed == 1
        assert counters.rounds == 1

    def test_strict_failures_do_not_loop_forever(self, conn, dsn):
        _stakeholder(conn, "1", CNPJ, "Geradora")
        _stakeholder(conn, "2", CPF, "José")
        counters = EnrichmentCounters()
        settings = StakeholderSettings(
            batch_size=10, drain=True, registry_policy=POLICY_STRICT, registry_backoff_seconds=0,
        )
        run_enrichment(dsn, _client(None), settings, counters)
        assert counters.errors == 1
        assert counters.processed == 1
        assert counters.warnings and CNPJ in counters.warnings[0]
        assert _entity(conn, CNPJ) is None

    def test_nothing_pending(self, dsn):
        counters = EnrichmentCounters()
        run_enrichment(dsn, _client(), StakeholderSettings(), counters)
        assert counters.rounds == 0
