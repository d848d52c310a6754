"""mtr_etl.registry_client

Company-registry (CNPJ) lookup client and the cooperative global throttle
shared by enrichment workers.

A lookup miss (non-2xx, transport error, undecodable body) returns None;
whether a miss is fatal is decided by the enrichment policy, not here.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable

import requests

from mtr_etl.normalize import only_digits, trim

log = logging.getLogger(__name__)

REGISTRY_CNPJ_URL = "https://brasilapi.com.br/api/cnpj/v1/{cnpj}"


@dataclass(frozen=True)
class RegistryRecord:
    legal_name: str | None = None
    trade_name: str | None = None
    uf: str | None = None
    municipality: str | None = None
    postal_code: str | None = None
    street: str | None = None
    street_number: str | None = None
    complement: str | None = None
    neighborhood: str | None = None
    size_bracket: str | None = None
    primary_activity_code: int | None = None
    primary_activity_desc: str | None = None
    ibge_municipality_code: int | None = None
    activity_start_date: date | None = None


def _opt_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _opt_date(value: Any) -> date | None:
    text = trim(str(value)) if value is not None else None
    if not text:
        return None
    for fmt in ("%Y-%m-%d", "%d/%m/%Y"):
        try:
            return datetime.strptime(text[:10], fmt).date()
        except ValueError:
            continue
    return None


def _opt_str(value: Any) -> str | None:
    return trim(str(value)) if value is not None else None


def parse_registry_payload(payload: dict[str, Any]) -> RegistryRecord:
    """Map the registry's flat JSON object onto RegistryRecord."""
    return RegistryRecord(
        legal_name=_opt_str(payload.get("razao_social")),
        trade_name=_opt_str(payload.get("nome_fantasia")),
        uf=_opt_str(payload.get("uf")),
        municipality=_opt_str(payload.get("municipio")),
        postal_code=_opt_str(payload.get("cep")),
        street=_opt_str(payload.get("logradouro")),
        street_number=_opt_str(payload.get("numero")),
        complement=_opt_str(payload.get("complemento")),
        neighborhood=_opt_str(payload.get("bairro")),
        size_bracket=_opt_str(payload.get("porte")),
        primary_activity_code=_opt_int(payload.get("cnae_fiscal")),
        primary_activity_desc=_opt_str(payload.get("cnae_fiscal_descricao")),
        ibge_municipality_code=_opt_int(payload.get("codigo_municipio_ibge")),
        activity_start_date=_opt_date(payload.get("data_inicio_atividade")),
    )


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class RegistryClient:
    """Thin wrapper over the CNPJ lookup endpoint."""

    def __init__(
        self,
        session: requests.Session,
        timeout: float = 30.0,
        url_template: str = REGISTRY_CNPJ_URL,
    ) -> None:
        self._session = session
        self._timeout = timeout
        self._url_template = url_template

    def lookup_cnpj(self, cnpj: str) -> RegistryRecord | None:
        """Return registry data for cnpj, or None on any lookup miss."""
        url = self._url_template.format(cnpj=only_digits(cnpj))
        try:
            resp = self._session.get(url, timeout=self._timeout)
        except requests.RequestException as exc:
            log.warning("registry lookup failed for %s: %s", cnpj, exc)
            return None
        if not 200 <= resp.status_code < 300:
            log.info("registry lookup miss for %s: HTTP %s", cnpj, resp.status_code)
            return None
        try:
            payload = resp.json()
        except ValueError:
            log.warning("registry returned non-JSON body for %s", cnpj)
            return None
        if not isinstance(payload, dict):
            return None
        return parse_registry_payload(payload)


# ---------------------------------------------------------------------------
# Throttle
# ---------------------------------------------------------------------------

@dataclass
class RegistryThrottle:
    """Global pause after every N successful registry calls.

    Thread-safe: once the Nth success is recorded, every worker that calls
    wait() blocks until the pause window has elapsed.
    """

    every: int = 3
    pause_seconds: float = 60.0
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    _successes: int = field(default=0, init=False, repr=False)
    _resume_at: float = field(default=0.0, init=False, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def wait(self) -> None:
        """Block while a pause window is active."""
        with self._lock:
            remaining = self._resume_at - self.clock()
        if remaining > 0:
            self.sleep(remaining)

    def on_success(self) -> bool:
        """Record a successful call. Returns True when a pause window opened."""
        if self.every <= 0:
            return False
        with self._lock:
            self._successes += 1
            if self._successes % self.every == 0:
                self._resume_at = self.clock() + self.pause_seconds
                log.info(
                    "registry throttle: %d calls, pausing %.0fs",
                    self._successes, self.pause_seconds,
                )
                return True
        return False

    @property
    def successes(self) -> int:
        return self._successes
