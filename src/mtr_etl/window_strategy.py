"""mtr_etl.window_strategy

Computes the monthly report-fetch URLs for one stakeholder unit.

The report endpoint caps its result size per status combination, so each
calendar-month window expands into one URL per status template.

Usage:
    from mtr_etl.window_strategy import build_strategy

    strategy = build_strategy("12345", last_end_date=date(2024, 1, 31))
    for url in strategy.urls:
        ...
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone

REPORT_BASE_URL = (
    "https://mtr.sinir.gov.br/api/mtr/pesquisaManifestoRelatorioMtrAnalitico"
)

# One template per manifest-status partition of the same report.
REPORT_PATH_TEMPLATES = (
    "/{unit_id}/18/8/{start}/{end}/5/0/9/0",
    "/{unit_id}/18/5/{start}/{end}/8/0/9/0",
    "/{unit_id}/18/9/{start}/{end}/8/0/5/0",
)

EPOCH_START = date(2020, 1, 1)

URL_DATE_FORMAT = "%d-%m-%Y"


@dataclass(frozen=True)
class Period:
    start: date
    end: date
    urls: tuple[str, ...] = ()


@dataclass(frozen=True)
class Strategy:
    unit_id: str
    period_start: date
    period_end: date
    periods: list[Period] = field(default_factory=list)

    @property
    def urls(self) -> list[str]:
        return [u for p in self.periods for u in p.urls]


def utc_yesterday() -> date:
    return datetime.now(timezone.utc).date() - timedelta(days=1)


def monthly_periods(start: date, end: date) -> list[tuple[date, date]]:
    """Split [start, end] into calendar-month sub-periods.

    The first period may begin mid-month and the last may end mid-month.
    Returns [] when start > end.
    """
    periods: list[tuple[date, date]] = []
    if start > end:
        return periods
    year, month = start.year, start.month
    while (year, month) <= (end.year, end.month):
        first = start if (year, month) == (start.year, start.month) else date(year, month, 1)
        last = date(year, month, calendar.monthrange(year, month)[1])
        if last > end:
            last = end
        periods.append((first, last))
        if month == 12:
            year, month = year + 1, 1
        else:
            month += 1
    return periods


def expand_urls(unit_id: str, start: date, end: date) -> tuple[str, ...]:
    fmt_start = start.strftime(URL_DATE_FORMAT)
    fmt_end = end.strftime(URL_DATE_FORMAT)
    return tuple(
        REPORT_BASE_URL + t.format(unit_id=unit_id, start=fmt_start, end=fmt_end)
        for t in REPORT_PATH_TEMPLATES
    )


def build_strategy(
    unit_id: str,
    last_end_date: date | None,
    today: date | None = None,
    epoch_start: date = EPOCH_START,
) -> Strategy:
    """Build the fetch plan for one unit.

    period_start is the day after last_end_date (or epoch_start when the
    unit was never harvested); period_end is yesterday in UTC. today is
    injectable so the result is deterministic in tests.
    """
    if isinstance(last_end_date, datetime):
        last_end_date = last_end_date.date()
    period_start = last_end_date + timedelta(days=1) if last_end_date else epoch_start
    period_end = (today - timedelta(days=1)) if today else utc_yesterday()
    periods = [
        Period(start=s, end=e, urls=expand_urls(unit_id, s, e))
        for s, e in monthly_periods(period_start, period_end)
    ]
    return Strategy(
        unit_id=unit_id,
        period_start=period_start,
        period_end=period_end,
        periods=periods,
    )


def archive_file_name(url: str, unit_id: str) -> str:
    """'<unit>_<start>_<end>_<status>.xlsx' with ISO dates, from a report URL."""
    parts = url.split("/")
    start = "-".join(reversed(parts[9].split("-")))
    end = "-".join(reversed(parts[10].split("-")))
    return f"{unit_id}_{start}_{end}_{parts[8]}.xlsx"
