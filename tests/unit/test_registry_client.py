"""Unit tests for mtr_etl.registry_client (HTTP mocked)."""

from __future__ import annotations

import threading
from datetime import date
from unittest.mock import MagicMock

import requests

from mtr_etl.registry_client import (
    RegistryClient,
    RegistryThrottle,
    parse_registry_payload,
)

PAYLOAD = {
    "cnpj": "11111111000111",
    "razao_social": "GERADORA LTDA",
    "nome_fantasia": "GERADORA",
    "uf": "SP",
    "municipio": "SAO PAULO",
    "cep": "01001000",
    "logradouro": "PRACA DA SE",
    "numero": "100",
    "complemento": "",
    "bairro": "SE",
    "porte": "DEMAIS",
    "cnae_fiscal": 3811400,
    "cnae_fiscal_descricao": "Coleta de resíduos não-perigosos",
    "codigo_municipio_ibge": 3550308,
    "data_inicio_atividade": "2005-03-10",
}


def _response(status: int = 200, payload=None, json_error: bool = False) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    if json_error:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


class TestParsePayload:
    def test_maps_fields(self):
        rec = parse_registry_payload(PAYLOAD)
        assert rec.legal_name == "GERADORA LTDA"
        assert rec.trade_name == "GERADORA"
        assert rec.uf == "SP"
        assert rec.primary_activity_code == 3811400
        assert rec.ibge_municipality_code == 3550308
        assert rec.activity_start_date == date(2005, 3, 10)

    def test_blank_strings_become_none(self):
        assert parse_registry_payload(PAYLOAD).complement is None

    def test_bad_numbers_and_dates(self):
        rec = parse_registry_payload({"cnae_fiscal": "x", "data_inicio_atividade": "soon"})
        assert rec.primary_activity_code is None
        assert rec.activity_start_date is None


class TestLookup:
    def test_hit(self):
        session = MagicMock()
        session.get.return_value = _response(200, PAYLOAD)
        client = RegistryClient(session, timeout=5, url_template="https://registry.test/{cnpj}")
        rec = client.lookup_cnpj("11.111.111/0001-11")
        assert rec is not None and rec.legal_name == "GERADORA LTDA"
        session.get.assert_called_once_with("https://registry.test/11111111000111", timeout=5)

    def test_non_2xx_is_miss(self):
        session = MagicMock()
        session.get.return_value = _response(404, {"message": "not found"})
        assert RegistryClient(session).lookup_cnpj("11111111000111") is None

    def test_network_error_is_miss(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("down")
        assert RegistryClient(session).lookup_cnpj("11111111000111") is None

    def test_non_json_is_miss(self):
        session = MagicMock()
        session.get.return_value = _response(200, json_error=True)
        assert RegistryClient(session).lookup_cnpj("11111111000111") is None

    def test_non_object_is_miss(self):
        session = MagicMock()
        session.get.return_value = _response(200, ["a"])
        assert RegistryClient(session).lookup_cnpj("11111111000111") is None


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0
        self.slept: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.slept.append(seconds)
        self.now += seconds


class TestThrottle:
    def test_pause_opens_every_n_successes(self):
        clock = FakeClock()
        t = RegistryThrottle(every=3, pause_seconds=60, sleep=clock.sleep, clock=clock)
        assert [t.on_success() for _ in range(6)] == [False, False, True, False, False, True]
        assert t.successes == 6

    def test_wait_sleeps_remaining_window(self):
        clock = FakeClock()
        t = RegistryThrottle(every=2, pause_seconds=60, sleep=clock.sleep, clock=clock)
        t.wait()
        assert clock.slept == []
        t.on_success()
        t.on_success()
        clock.now += 10
        t.wait()
        assert clock.slept == [50]
        t.wait()
        assert clock.slept == [50]

    def test_disabled(self):
        clock = FakeClock()
        t = RegistryThrottle(every=0, sleep=clock.sleep, clock=clock)
        assert t.on_success() is False
        t.wait()
        assert clock.slept == []

    def test_thread_safe_counting(self):
        t = RegistryThrottle(every=1000, pause_seconds=0)
        threads = [
            threading.Thread(target=lambda: [t.on_success() for _ in range(100)])
            for _ in range(8)
        ]
        for th in threads:
            th.start()
        for th in threads:
            th.join()
        assert t.successes == 800
