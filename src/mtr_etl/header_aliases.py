"""mtr_etl.header_aliases

Declarative header-alias table for the report spreadsheet parser.

Responsibilities:
  - Load and validate config/header_aliases.yml
  - Expose canonical field -> ordered label variants, plus the keyword
    hints used to score candidate header rows

Usage:
    from mtr_etl.header_aliases import load_header_aliases

    aliases = load_header_aliases()
    aliases.variants("manifest_number")
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from mtr_etl.shared import HeaderAliasValidationError

DEFAULT_ALIASES_PATH = (
    Path(__file__).parent.parent.parent / "config" / "header_aliases.yml"
)

# Fields the parser cannot work without.
REQUIRED_FIELDS = frozenset({
    "manifest_number",
    "manifest_type",
    "emission_date",
    "status",
    "waste_description",
    "generator_tax_id",
    "transporter_tax_id",
    "receiver_tax_id",
})

REQUIRED_YAML_KEYS = frozenset({"header_hints", "columns"})


@dataclass(frozen=True)
class HeaderAliases:
    """Validated alias table loaded from YAML."""

    columns: dict[str, tuple[str, ...]]
    header_hints: tuple[str, ...]
    version: str = ""
    yaml_hash: str = field(default="", compare=False)

    def variants(self, canonical: str) -> tuple[str, ...]:
        return self.columns.get(canonical, ())


def load_header_aliases(yaml_path: Path | None = None) -> HeaderAliases:
    """Load, validate and return the alias table.

    Raises:
        HeaderAliasValidationError: If the file does not match the schema.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_ALIASES_PATH
    raw = path.read_text(encoding="utf-8")
    data: dict[str, Any] = yaml.safe_load(raw)
    validate_header_aliases(data)
    return HeaderAliases(
        columns={
            str(k): tuple(str(v) for v in variants)
            for k, variants in data["columns"].items()
        },
        header_hints=tuple(str(h) for h in data["header_hints"]),
        version=str(data.get("version", "")),
        yaml_hash=hashlib.sha256(raw.encode("utf-8")).hexdigest(),
    )


def validate_header_aliases(data: dict[str, Any]) -> None:
    """Raise HeaderAliasValidationError if data does not match the schema."""
    if not isinstance(data, dict):
        raise HeaderAliasValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise HeaderAliasValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    hints = data.get("header_hints")
    if not isinstance(hints, list) or not hints:
        raise HeaderAliasValidationError("'header_hints' must be a non-empty list.")
    for hint in hints:
        if not isinstance(hint, str) or not hint.strip():
            raise HeaderAliasValidationError(f"Invalid header hint {hint!r}.")

    columns = data.get("columns")
    if not isinstance(columns, dict) or not columns:
        raise HeaderAliasValidationError("'columns' must be a non-empty mapping.")

    missing_fields = REQUIRED_FIELDS - set(columns.keys())
    if missing_fields:
        raise HeaderAliasValidationError(f"Missing canonical fields: {sorted(missing_fields)}")

    for canonical, variants in columns.items():
        if not isinstance(variants, list) or not variants:
            raise HeaderAliasValidationError(
                f"Field '{canonical}' must map to a non-empty list of labels."
            )
        for label in variants:
            if not isinstance(label, str) or not label.strip():
                raise HeaderAliasValidationError(
                    f"Field '{canonical}' has an empty or non-string label: {label!r}."
                )
