"""Integration tests for per-unit address reconciliation.

Requires a real PostgreSQL database (via pytest-postgresql).
The partner endpoint is mocked; no live HTTP.
"""

from __future__ import annotations

from unittest.mock import MagicMock

from mtr_etl.address_reconcile import run_address_reconciliation
from mtr_etl.settings import AddressSettings
from mtr_etl.shared import AddressCounters

CNPJ_A = "11111111000111"
CNPJ_B = "22222222000122"


def _stakeholder(conn, unit_id: str, tax_id: str, verified: bool = False) -> None:
    conn.execute(
        "INSERT INTO stakeholder (unit_id, tax_id, name, address_verified) VALUES (%s, %s, 'x', %s)",
        (unit_id, tax_id, verified),
    )
    conn.commit()


def _entry(code, cnpj, address, name="Unidade"):
    return {"parCodigo": code, "parDescricao": name, "jurCnpj": cnpj, "paeEndereco": address}


def _session(responses: dict[str, dict | int]) -> MagicMock:
    """responses maps a CNPJ to a JSON body, or to an HTTP status for failures."""

    def get(url, timeout=None):
        cnpj = url.rsplit("/", 1)[-1]
        body = responses.get(cnpj, {"erro": False, "objetoResposta": []})
        resp = MagicMock()
        if isinstance(body, int):
            resp.status_code = body
        else:
            resp.status_code = 200
            resp.json.return_value = body
        return resp

    session = MagicMock()
    session.get.side_effect = get
    return session


def _addresses(conn):
    return conn.execute(
        "SELECT unit_code, tax_id, address FROM entity_unit_address ORDER BY unit_code, tax_id"
    ).fetchall()


class TestRunAddressReconciliation:
    def test_persists_and_marks_verified(self, conn):
        _stakeholder(conn, "1", "11.111.111/0001-11")
        _stakeholder(conn, "2", CNPJ_B)
        _stakeholder(conn, "3", "123.456.789-01")
        session = _session({
            CNPJ_A: {"erro": False, "objetoResposta": [
                _entry(10, CNPJ_A, "Rua A, 1"),
                _entry(11, CNPJ_A, "Rua A, 2"),
            ]},
            CNPJ_B: {"erro": False, "objetoResposta": []},
        })
        counters = AddressCounters()
        run_address_reconciliation(conn, session, AddressSettings(batch_size=10), counters)
        assert _addresses(conn) == [("10", CNPJ_A, "Rua A, 1"), ("11", CNPJ_A, "Rua A, 2")]
        assert counters.tax_ids_queried == 2
        assert counters.addresses_persisted == 2
        verified = conn.execute(
            "SELECT tax_id, address_verified FROM stakeholder ORDER BY unit_id"
        ).fetchall()
        assert verified == [
            ("11.111.111/0001-11", True),
            (CNPJ_B, True),
            ("123.456.789-01", False),
        ]

    def test_overlapping_partners_dedupe_last_wins(self, conn):
        _stakeholder(conn, "1", CNPJ_A)
        _stakeholder(conn, "2", CNPJ_B)
        session = _session({
            CNPJ_A: {"objetoResposta": [_entry(10, CNPJ_A, "first")]},
            CNPJ_B: {"objetoResposta": [_entry(10, CNPJ_A, "second")]},
        })
        counters = AddressCounters()
        run_address_reconciliation(conn, session, AddressSettings(batch_size=10), counters)
        assert _addresses(conn) == [("10", CNPJ_A, "second")]
        assert counters.addresses_resolved == 1

    def test_errors_stay_pending(self, conn):
        _stakeholder(conn, "1", CNPJ_A)
        _stakeholder(conn, "2", CNPJ_B)
        session = _session({
            CNPJ_A: {"erro": True, "mensagem": "falha"},
            CNPJ_B: 500,
        })
        counters = AddressCounters()
        run_address_reconciliation(conn, session, AddressSettings(batch_size=10, max_rounds=5), counters)
        assert counters.lookup_errors == 2
        assert counters.rounds == 1
        assert conn.execute(
            "SELECT count(*) FROM stakeholder WHERE address_verified"
        ).fetchone()[0] == 0

    def test_stops_after_round_without_new_addresses(self, conn):
        for i in range(3):
            _stakeholder(conn, str(i), f"{i + 1}" * 8 + "000100")
        session = _session({})
        counters = AddressCounters()
        run_address_reconciliation(conn, session, AddressSettings(batch_size=1, max_rounds=10), counters)
        assert counters.rounds == 1

    def test_max_rounds(self, conn):
        for i in range(3):
            tax_id = f"{i + 1}" * 8 + "000100"
            _stakeholder(conn, str(i), tax_id)
        session = _session({
            f"{i + 1}" * 8 + "000100": {"objetoResposta": [_entry(i, f"{i + 1}" * 8 + "000100", "Rua")]}
            for i in range(3)
        })
        counters = AddressCounters()
        run_address_reconciliation(conn, session, AddressSettings(batch_size=1, max_rounds=2), counters)
        assert counters.rounds == 2
        assert counters.addresses_persisted == 2
