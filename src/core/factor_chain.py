from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from src.core.consolidation import subtract_months, subtract_years
from src.core.records import DailyRecord, PeriodCheckpoint, PeriodWindow, sort_records
from src.core.returns_math import compound, percent_from_factors, simple_personal_return

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class WindowSpec:
    key: str  # validDocsCountByPeriod key
    prefix: str  # returns.<prefix>Return / <prefix>PersonalReturn

    @property
    def has_flag(self) -> str:
        return f"has{self.prefix[0].upper()}{self.prefix[1:]}Data"


WINDOWS: tuple[WindowSpec, ...] = (
    WindowSpec("fiveYears", "fiveYear"),
    WindowSpec("twoYears", "twoYear"),
    WindowSpec("oneYear", "oneYear"),
    WindowSpec("sixMonths", "sixMonth"),
    WindowSpec("threeMonths", "threeMonth"),
    WindowSpec("oneMonth", "oneMonth"),
    WindowSpec("ytd", "ytd"),
)


def calculate_period_boundaries(today: dt.date) -> dict[str, dt.date]:
    return {
        "fiveYears": subtract_years(today, 5),
        "twoYears": subtract_years(today, 2),
        "oneYear": subtract_years(today, 1),
        "sixMonths": subtract_months(today, 6),
        "threeMonths": subtract_months(today, 3),
        "oneMonth": subtract_months(today, 1),
        "ytd": dt.date(today.year, 1, 1),
    }


def init_windows(boundaries: dict[str, dt.date]) -> dict[str, PeriodWindow]:
    return {spec.key: PeriodWindow(key=spec.key, boundary_date=boundaries[spec.key]) for spec in WINDOWS}


@dataclass(frozen=True)
class _Unit:
    """One step of the chronological walk: a consolidated year/month or a single day."""

    kind: str  # "year" | "month" | "day"
    start_date: dt.date
    end_date: dt.date
    factor_ratio: float
    start_value: Optional[float]
    end_value: Optional[float]
    cash_flow: float
    docs_count: int
    chart_pct: float


def _checkpoint_units(checkpoints: Iterable[PeriodCheckpoint], currency: str, asset: str | None) -> list[_Unit]:
    out: list[_Unit] = []
    for cp in sorted(checkpoints, key=lambda c: (c.start_date, c.end_date)):
        s = cp.summary(currency, asset)
        if s is None:
            continue
        out.append(
            _Unit(
                kind=cp.period_type,
                start_date=cp.start_date,
                end_date=cp.end_date,
                factor_ratio=s.factor_ratio,
                start_value=s.start_total_value,
                end_value=s.end_total_value,
                cash_flow=s.total_cash_flow,
                docs_count=s.docs_count or 1,
                chart_pct=s.period_return_pct,
            )
        )
    return out


def _daily_units(records: Iterable[DailyRecord], currency: str, asset: str | None) -> list[_Unit]:
    out: list[_Unit] = []
    for r in sort_records(records):
        snap = r.snapshot(currency, asset)
        if snap is None:
            continue
        out.append(
            _Unit(
                kind="day",
                start_date=r.date,
                end_date=r.date,
                factor_ratio=compound(1.0, snap.adjusted_change_pct),
                start_value=snap.total_value,
                end_value=snap.total_value,
                cash_flow=snap.total_cash_flow or 0.0,
                docs_count=1,
                chart_pct=snap.daily_change_pct or 0.0,
            )
        )
    return out


class _ChainWalk:
    """
    Chronological walk over units, feeding every intersecting window.

    A checkpoint is atomic: a window is entered at the first unit whose end date reaches
    the boundary, even when that unit starts before it. Only the open current month is kept
    at daily granularity, which bounds the error to closed months straddling a boundary.
    """

    def __init__(self, today: dt.date):
        self.windows = init_windows(calculate_period_boundaries(today))
        self.factor = 1.0
        self.last_end: dt.date | None = None
        self.first_date: dt.date | None = None
        self.first_value: float | None = None
        self.last_value: float | None = None
        self.dates: list[str] = []
        self.values: list[float] = []
        self.percent_changes: list[float] = []
        self.years = _YearRollup()

    def apply(self, unit: _Unit) -> None:
        if self.last_end is not None and unit.end_date <= self.last_end:
            log.debug("[factor_chain] skipping %s unit ending %s: overlaps previous unit", unit.kind, unit.end_date)
            return
        self.last_end = unit.end_date

        for w in self.windows.values():
            if unit.end_date < w.boundary_date:
                continue
            if not w.found:
                w.start_factor = self.factor
                w.start_value = unit.start_value
                w.found = True
        self.factor *= unit.factor_ratio
        for w in self.windows.values():
            if not w.found:
                continue
            w.current_factor = self.factor
            if unit.end_value is not None:
                w.end_value = unit.end_value
            w.total_cash_flow += unit.cash_flow
            w.docs_count += unit.docs_count

        if unit.end_value is not None:
            self.dates.append(unit.end_date.isoformat())
            self.values.append(unit.end_value)
            self.percent_changes.append(unit.chart_pct)
            if self.first_date is None:
                self.first_date = unit.start_date
                self.first_value = unit.start_value if unit.start_value is not None else unit.end_value
            self.last_value = unit.end_value

        self.years.add(unit)

    def result(self) -> dict[str, Any]:
        returns: dict[str, Any] = {}
        counts: dict[str, int] = {}
        for spec in WINDOWS:
            w = self.windows[spec.key]
            if w.found:
                twr = percent_from_factors(w.start_factor, w.current_factor)
                mwr = simple_personal_return(w.start_value or 0.0, w.end_value or 0.0, w.total_cash_flow)
            else:
                twr = 0.0
                mwr = 0.0
            returns[f"{spec.prefix}Return"] = twr
            returns[f"{spec.prefix}PersonalReturn"] = mwr
            returns[spec.has_flag] = w.found
            counts[spec.key] = w.docs_count

        overall = 0.0
        if self.first_value and self.first_value > 0 and self.last_value is not None:
            overall = (self.last_value - self.first_value) / self.first_value * 100.0

        performance_by_year = self.years.build()
        return {
            "returns": returns,
            "validDocsCountByPeriod": counts,
            "totalValueData": {
                "dates": self.dates,
                "values": self.values,
                "percentChanges": self.percent_changes,
                "overallPercentChange": overall,
            },
            "performanceByYear": performance_by_year,
            "availableYears": sorted(performance_by_year.keys(), key=int, reverse=True),
            "startDate": self.first_date.isoformat() if self.first_date else "",
        }


@dataclass
class _MonthAcc:
    factor: float = 1.0
    start_value: Optional[float] = None
    end_value: Optional[float] = None
    cash_flow: float = 0.0

    def add(self, unit: _Unit) -> None:
        self.factor *= unit.factor_ratio
        if self.start_value is None:
            self.start_value = unit.start_value
        if unit.end_value is not None:
            self.end_value = unit.end_value
        self.cash_flow += unit.cash_flow


class _YearRollup:
    """Second grouping of the same units by (year, month) for the calendar table."""

    def __init__(self) -> None:
        self.months: dict[int, dict[int, _MonthAcc]] = {}
        self.whole_years: dict[int, _MonthAcc] = {}

    def add(self, unit: _Unit) -> None:
        if unit.kind == "year":
            acc = self.whole_years.setdefault(unit.start_date.year, _MonthAcc())
            acc.add(unit)
            return
        # Months and days both land in the month they start in.
        by_month = self.months.setdefault(unit.start_date.year, {})
        acc = by_month.get(unit.start_date.month)
        if acc is None:
            acc = _MonthAcc()
            by_month[unit.start_date.month] = acc
        acc.add(unit)

    def build(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for year in sorted(set(self.months) | set(self.whole_years)):
            months = {str(m): 0.0 for m in range(1, 13)}
            personal = {str(m): 0.0 for m in range(1, 13)}
            detail = self.months.get(year)
            if detail:
                year_factor = 1.0
                first: _MonthAcc | None = None
                last_end: float | None = None
                cash_flow = 0.0
                for m in sorted(detail):
                    acc = detail[m]
                    months[str(m)] = (acc.factor - 1.0) * 100.0
                    personal[str(m)] = simple_personal_return(acc.start_value or 0.0, acc.end_value or 0.0, acc.cash_flow)
                    year_factor *= acc.factor
                    if first is None:
                        first = acc
                    if acc.end_value is not None:
                        last_end = acc.end_value
                    cash_flow += acc.cash_flow
                total = (year_factor - 1.0) * 100.0
                personal_total = simple_personal_return(
                    (first.start_value if first else None) or 0.0, last_end or 0.0, cash_flow
                )
            else:
                acc = self.whole_years[year]
                total = (acc.factor - 1.0) * 100.0
                personal_total = simple_personal_return(acc.start_value or 0.0, acc.end_value or 0.0, acc.cash_flow)
            out[str(year)] = {
                "months": months,
                "personalMonths": personal,
                "total": total,
                "personalTotal": personal_total,
            }
        return out


def chain_factors(
    yearly: Iterable[PeriodCheckpoint],
    monthly: Iterable[PeriodCheckpoint],
    daily: Iterable[DailyRecord],
    currency: str,
    today: dt.date,
    asset_key: str | None = None,
) -> dict[str, Any]:
    """
    Compute window returns from consolidated years, consolidated months and fresh days.

    Units are applied years first, then months, then days: later units multiply onto the
    factor established by earlier ones.
    """
    walk = _ChainWalk(today)
    for unit in _checkpoint_units(yearly, currency, asset_key):
        walk.apply(unit)
    for unit in _checkpoint_units(monthly, currency, asset_key):
        walk.apply(unit)
    for unit in _daily_units(daily, currency, asset_key):
        walk.apply(unit)
    return walk.result()


def scan_daily_records(
    records: Iterable[DailyRecord],
    currency: str,
    today: dt.date,
    asset_key: str | None = None,
) -> dict[str, Any]:
    """Brute-force variant over the full unconsolidated daily history."""
    walk = _ChainWalk(today)
    for unit in _daily_units(records, currency, asset_key):
        walk.apply(unit)
    return walk.result()


def empty_returns_result() -> dict[str, Any]:
    returns: dict[str, Any] = {}
    for spec in WINDOWS:
        returns[f"{spec.prefix}Return"] = 0.0
        returns[f"{spec.prefix}PersonalReturn"] = 0.0
        returns[spec.has_flag] = False
    return {
        "returns": returns,
        "validDocsCountByPeriod": {spec.key: 0 for spec in WINDOWS},
        "totalValueData": {"dates": [], "values": [], "percentChanges": [], "overallPercentChange": 0.0},
        "performanceByYear": {},
        "availableYears": [],
        "startDate": "",
    }
