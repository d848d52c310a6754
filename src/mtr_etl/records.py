"""mtr_etl.records

Domain dataclasses shared by the harvesting and normalization layers.

A manifest has three parties with the same shape; only the transporter
carries a Vehicle (driver + plate).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from mtr_etl.normalize import only_digits

JOB_PENDING = "PENDING"
JOB_PROCESSING = "PROCESSING"
JOB_ERROR = "ERROR"

ROLE_GENERATOR = "GERADOR"
ROLE_TRANSPORTER = "TRANSPORTADOR"
ROLE_RECEIVER = "DESTINADOR"


@dataclass
class Vehicle:
    driver_name: str | None = None
    plate: str | None = None


@dataclass
class Party:
    unit_id: str = ""
    tax_id: str = ""
    name: str = ""
    note: str | None = None
    vehicle: Vehicle | None = None

    @property
    def tax_id_digits(self) -> str:
        return only_digits(self.tax_id)


@dataclass
class WasteLine:
    description: str | None = None
    internal_code: str | None = None
    internal_description: str | None = None
    waste_class: str | None = None
    unit: str | None = None
    indicated_qty: Decimal = Decimal("0")
    received_qty: Decimal | None = None


@dataclass
class ManifestRecord:
    manifest_number: str
    manifest_type: str = ""
    emission_responsible: str = ""
    has_complementary: str | None = None
    provisional_number: str | None = None
    emission_date: str = ""
    receipt_date: str | None = None
    status: str = ""
    receipt_responsible: str | None = None
    justification: str | None = None
    treatment: str = ""
    cdf_number: str | None = None
    generator: Party = field(default_factory=Party)
    transporter: Party = field(default_factory=lambda: Party(vehicle=Vehicle()))
    receiver: Party = field(default_factory=Party)
    waste_lines: list[WasteLine] = field(default_factory=list)

    def parties(self) -> list[tuple[str, Party]]:
        return [
            (ROLE_GENERATOR, self.generator),
            (ROLE_TRANSPORTER, self.transporter),
            (ROLE_RECEIVER, self.receiver),
        ]

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict used for the history/quarantine archive column."""
        return _json_safe(asdict(self))


@dataclass
class Stakeholder:
    unit_id: str
    tax_id: str
    name: str
    address_verified: bool = False
    period_start: date | None = None
    period_end: date | None = None


@dataclass
class FetchJob:
    url: str
    unit_id: str
    status: str = JOB_PENDING
    locked_by: str | None = None
    locked_at: datetime | None = None
    last_error: str | None = None
    created_by: str = "system"
    created_at: datetime | None = None


def _json_safe(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_json_safe(v) for v in value]
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value
