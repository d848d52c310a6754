"""mtr_etl.settings

Loads and validates config/pipeline.yml into a frozen PipelineSettings.

Usage:
    from mtr_etl.settings import load_settings

    settings = load_settings()
    settings.processing.max_workers
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from pathlib import Path
from typing import Any

import yaml

from mtr_etl.shared import SettingsValidationError

DEFAULT_SETTINGS_PATH = Path(__file__).parent.parent.parent / "config" / "pipeline.yml"

REQUIRED_SECTIONS = frozenset({
    "processing", "http", "stakeholder", "mtr", "address", "queue", "strategy", "reference",
})

VALID_REGISTRY_POLICIES = ("lenient", "strict")


@dataclass(frozen=True)
class ProcessingSettings:
    max_workers: int = 10
    batch_size: int = 100
    progress_every: int = 10


@dataclass(frozen=True)
class HttpSettings:
    report_timeout_seconds: float = 180.0
    registry_timeout_seconds: float = 30.0
    partner_timeout_seconds: float = 60.0
    user_agent: str = "MTR-DataPipeline/1.0"


@dataclass(frozen=True)
class StakeholderSettings:
    batch_size: int = 100
    drain: bool = True
    registry_policy: str = "lenient"
    registry_backoff_seconds: float = 5.0
    throttle_every: int = 3
    throttle_pause_seconds: float = 60.0


@dataclass(frozen=True)
class MtrSettings:
    batch_size: int = 100
    drain: bool = True
    similarity_threshold: float = 0.80


@dataclass(frozen=True)
class AddressSettings:
    batch_size: int = 200
    max_rounds: int = 50


@dataclass(frozen=True)
class PipelineSettings:
    processing: ProcessingSettings = ProcessingSettings()
    http: HttpSettings = HttpSettings()
    stakeholder: StakeholderSettings = StakeholderSettings()
    mtr: MtrSettings = MtrSettings()
    address: AddressSettings = AddressSettings()
    reclaim_stale_minutes: int | None = None
    epoch_start: date = date(2020, 1, 1)
    reference_data_dir: Path = Path("data/reference")

    def with_overrides(self, **overrides: Any) -> "PipelineSettings":
        """Copy with CLI overrides applied; None values are ignored.

        Keys: batch_size, max_workers, drain, registry_policy,
        reclaim_stale_minutes, data_dir.
        """
        s = self
        if overrides.get("batch_size") is not None:
            bs = int(overrides["batch_size"])
            s = replace(
                s,
                processing=replace(s.processing, batch_size=bs),
                stakeholder=replace(s.stakeholder, batch_size=bs),
                mtr=replace(s.mtr, batch_size=bs),
                address=replace(s.address, batch_size=bs),
            )
        if overrides.get("max_workers") is not None:
            s = replace(s, processing=replace(s.processing, max_workers=int(overrides["max_workers"])))
        if overrides.get("drain") is not None:
            drain = bool(overrides["drain"])
            s = replace(
                s,
                stakeholder=replace(s.stakeholder, drain=drain),
                mtr=replace(s.mtr, drain=drain),
            )
        if overrides.get("registry_policy") is not None:
            policy = overrides["registry_policy"]
            if policy not in VALID_REGISTRY_POLICIES:
                raise SettingsValidationError(f"Invalid registry_policy '{policy}'.")
            s = replace(s, stakeholder=replace(s.stakeholder, registry_policy=policy))
        if overrides.get("reclaim_stale_minutes") is not None:
            s = replace(s, reclaim_stale_minutes=int(overrides["reclaim_stale_minutes"]))
        if overrides.get("data_dir") is not None:
            s = replace(s, reference_data_dir=Path(overrides["data_dir"]))
        return s


def load_settings(yaml_path: Path | None = None) -> PipelineSettings:
    """Load, validate, and return PipelineSettings from a YAML file.

    Raises:
        SettingsValidationError: If a section or value is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    path = yaml_path or DEFAULT_SETTINGS_PATH
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    validate_settings(data)

    proc = data["processing"]
    http = data["http"]
    sh = data["stakeholder"]
    mtr = data["mtr"]
    addr = data["address"]
    reclaim = data["queue"].get("reclaim_stale_minutes")
    return PipelineSettings(
        processing=ProcessingSettings(
            max_workers=int(proc["max_workers"]),
            batch_size=int(proc["batch_size"]),
            progress_every=int(proc.get("progress_every", 10)),
        ),
        http=HttpSettings(
            report_timeout_seconds=float(http["report_timeout_seconds"]),
            registry_timeout_seconds=float(http["registry_timeout_seconds"]),
            partner_timeout_seconds=float(http.get("partner_timeout_seconds", 60)),
            user_agent=str(http.get("user_agent") or HttpSettings.user_agent),
        ),
        stakeholder=StakeholderSettings(
            batch_size=int(sh["batch_size"]),
            drain=bool(sh["drain"]),
            registry_policy=str(sh["registry_policy"]),
            registry_backoff_seconds=float(sh.get("registry_backoff_seconds", 5)),
            throttle_every=int(sh.get("throttle_every", 3)),
            throttle_pause_seconds=float(sh.get("throttle_pause_seconds", 60)),
        ),
        mtr=MtrSettings(
            batch_size=int(mtr["batch_size"]),
            drain=bool(mtr["drain"]),
            similarity_threshold=float(mtr.get("similarity_threshold", 0.80)),
        ),
        address=AddressSettings(
            batch_size=int(addr.get("batch_size", 200)),
            max_rounds=int(addr.get("max_rounds", 50)),
        ),
        reclaim_stale_minutes=int(reclaim) if reclaim is not None else None,
        epoch_start=_as_date(data["strategy"]["epoch_start"]),
        reference_data_dir=Path(data["reference"]["data_dir"]),
    )


def _as_date(value: Any) -> date:
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


def validate_settings(data: Any) -> None:
    """Raise SettingsValidationError if data does not match the schema."""
    if not isinstance(data, dict):
        raise SettingsValidationError("YAML root must be a mapping.")

    missing = REQUIRED_SECTIONS - set(data.keys())
    if missing:
        raise SettingsValidationError(f"Missing required sections: {sorted(missing)}")

    for section in REQUIRED_SECTIONS:
        if not isinstance(data[section], dict):
            raise SettingsValidationError(f"Section '{section}' must be a mapping.")

    _require_positive_int(data, "processing", "max_workers")
    _require_positive_int(data, "processing", "batch_size")
    _require_positive_int(data, "stakeholder", "batch_size")
    _require_positive_int(data, "mtr", "batch_size")

    for key in ("report_timeout_seconds", "registry_timeout_seconds"):
        val = data["http"].get(key)
        try:
            fval = float(val)
        except (TypeError, ValueError):
            raise SettingsValidationError(f"http.{key} value '{val}' is not numeric.")
        if fval <= 0:
            raise SettingsValidationError(f"http.{key} must be > 0.")

    for section in ("stakeholder", "mtr"):
        if not isinstance(data[section].get("drain"), bool):
            raise SettingsValidationError(f"{section}.drain must be true or false.")

    policy = data["stakeholder"].get("registry_policy")
    if policy not in VALID_REGISTRY_POLICIES:
        raise SettingsValidationError(
            f"Invalid stakeholder.registry_policy '{policy}'. "
            f"Must be one of {list(VALID_REGISTRY_POLICIES)}."
        )

    threshold = data["mtr"].get("similarity_threshold", 0.80)
    try:
        fthreshold = float(threshold)
    except (TypeError, ValueError):
        raise SettingsValidationError(f"mtr.similarity_threshold '{threshold}' is not numeric.")
    if not (0.0 <= fthreshold <= 1.0):
        raise SettingsValidationError(
            f"mtr.similarity_threshold {fthreshold} must be in [0.0, 1.0]."
        )

    reclaim = data["queue"].get("reclaim_stale_minutes")
    if reclaim is not None and (not isinstance(reclaim, int) or reclaim <= 0):
        raise SettingsValidationError("queue.reclaim_stale_minutes must be a positive integer or null.")

    epoch = data["strategy"].get("epoch_start")
    try:
        _as_date(epoch)
    except (TypeError, ValueError):
        raise SettingsValidationError(f"strategy.epoch_start '{epoch}' is not an ISO date.")

    if not data["reference"].get("data_dir"):
        raise SettingsValidationError("reference.data_dir must be set.")


def _require_positive_int(data: dict[str, Any], section: str, key: str) -> None:
    val = data[section].get(key)
    if not isinstance(val, int) or isinstance(val, bool) or val <= 0:
        raise SettingsValidationError(f"{section}.{key} must be a positive integer (got {val!r}).")
