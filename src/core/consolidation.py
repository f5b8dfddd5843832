from __future__ import annotations

import calendar
import datetime as dt
import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from src.core.exceptions import InvalidPeriodKeyError
from src.core.records import (
    PERIOD_TYPES,
    DailyRecord,
    DailySnapshot,
    PeriodCheckpoint,
    PeriodSummary,
    parse_date,
    sort_records,
)
from src.core.returns_math import compound, midpoint_dietz_return, percent_from_factors

# Bump when the stored checkpoint document shape changes.
CONSOLIDATED_SCHEMA_VERSION = 1

NON_CURRENCY_FIELDS = frozenset({"periodType", "periodKey", "startDate", "endDate", "docsCount", "version"})

_MONTH_KEY_RE = re.compile(r"^(\d{4})-(\d{2})$")
_YEAR_KEY_RE = re.compile(r"^(\d{4})$")


@dataclass
class _SummaryAccumulator:
    """Single-pass fold of daily snapshots into one PeriodSummary."""

    seeded: bool = False
    factor: float = 1.0
    start_value: float = 0.0
    start_investment: float = 0.0
    end_value: float = 0.0
    end_investment: float = 0.0
    total_cash_flow: float = 0.0
    docs_count: int = 0
    valid_docs_count: int = 0
    assets: dict[str, "_SummaryAccumulator"] = field(default_factory=dict)

    def add(self, snap: DailySnapshot, *, with_assets: bool) -> None:
        self.docs_count += 1
        if snap.total_value is not None:
            if not self.seeded:
                self.start_value = snap.total_value
                self.start_investment = snap.total_investment or 0.0
                self.seeded = True
            # Later records always overwrite the closing values (sparse calendars).
            self.end_value = snap.total_value
            self.end_investment = snap.total_investment or 0.0
        self.total_cash_flow += snap.total_cash_flow or 0.0
        if snap.adjusted_change_pct is not None:
            self.factor = compound(self.factor, snap.adjusted_change_pct)
            self.valid_docs_count += 1
        if with_assets:
            for key, asset in snap.assets.items():
                acc = self.assets.get(key)
                if acc is None:
                    acc = _SummaryAccumulator()
                    self.assets[key] = acc
                acc.add(asset, with_assets=False)

    def finalize(self, *, require_value: bool = True) -> PeriodSummary | None:
        if self.valid_docs_count == 0 or (require_value and not self.seeded):
            return None
        assets: dict[str, PeriodSummary] = {}
        for key in sorted(self.assets):
            # Assets may report change percentages without ever carrying a value.
            s = self.assets[key].finalize(require_value=False)
            if s is not None:
                assets[key] = s
        return PeriodSummary(
            start_factor=1.0,
            end_factor=self.factor,
            period_return_pct=percent_from_factors(1.0, self.factor),
            start_total_value=self.start_value,
            end_total_value=self.end_value,
            start_total_investment=self.start_investment,
            end_total_investment=self.end_investment,
            total_cash_flow=self.total_cash_flow,
            personal_return_pct=midpoint_dietz_return(self.start_value, self.end_value, self.total_cash_flow),
            docs_count=self.docs_count,
            valid_docs_count=self.valid_docs_count,
            assets=assets,
        )


def extract_currencies(records: Iterable[DailyRecord]) -> list[str]:
    out: set[str] = set()
    for r in records:
        out.update(r.currencies.keys())
    return sorted(out)


def consolidate_currency(records: list[DailyRecord], currency: str) -> PeriodSummary | None:
    acc = _SummaryAccumulator()
    for r in records:
        snap = r.currencies.get(currency)
        if snap is None:
            continue
        acc.add(snap, with_assets=True)
    return acc.finalize()


def consolidate_period(records: Iterable[DailyRecord], period_key: str, period_type: str) -> PeriodCheckpoint | None:
    """
    Fold the daily records of one closed month/year into a checkpoint.

    Returns None when there is nothing to consolidate (no records, or no currency with both
    a value and at least one change percentage).
    """
    if period_type not in PERIOD_TYPES:
        raise InvalidPeriodKeyError(f"Unknown period type: {period_type!r}")
    ordered = sort_records(records)
    if not ordered:
        return None

    currencies: dict[str, PeriodSummary] = {}
    for code in extract_currencies(ordered):
        s = consolidate_currency(ordered, code)
        if s is not None:
            currencies[code] = s
    if not currencies:
        return None

    return PeriodCheckpoint(
        period_type=period_type,
        period_key=period_key,
        start_date=ordered[0].date,
        end_date=ordered[-1].date,
        docs_count=len(ordered),
        currencies=currencies,
    )


def checkpoint_to_dict(cp: PeriodCheckpoint) -> dict[str, Any]:
    out: dict[str, Any] = {
        "periodType": cp.period_type,
        "periodKey": cp.period_key,
        "startDate": cp.start_date.isoformat(),
        "endDate": cp.end_date.isoformat(),
        "docsCount": cp.docs_count,
        "version": CONSOLIDATED_SCHEMA_VERSION,
    }
    for code in sorted(cp.currencies):
        out[code] = cp.currencies[code].to_dict()
    return out


def checkpoint_from_dict(data: dict[str, Any]) -> PeriodCheckpoint:
    start = parse_date(data.get("startDate"))
    end = parse_date(data.get("endDate"))
    if start is None or end is None:
        raise ValueError(f"checkpoint {data.get('periodKey')!r} is missing its date range")
    currencies = {
        str(k): PeriodSummary.from_dict(v)
        for k, v in data.items()
        if k not in NON_CURRENCY_FIELDS and isinstance(v, dict)
    }
    return PeriodCheckpoint(
        period_type=str(data.get("periodType") or ""),
        period_key=str(data.get("periodKey") or ""),
        start_date=start,
        end_date=end,
        docs_count=int(data.get("docsCount") or 0),
        currencies=currencies,
    )


# Period-key helpers -------------------------------------------------------


def month_key(d: dt.date) -> str:
    return f"{d.year:04d}-{d.month:02d}"


def period_bounds(period_key: str) -> tuple[str, dt.date, dt.date]:
    """Return (period_type, first_day, last_day) for "YYYY-MM" or "YYYY"."""
    m = _MONTH_KEY_RE.match(period_key or "")
    if m:
        y, mo = int(m.group(1)), int(m.group(2))
        if not 1 <= mo <= 12:
            raise InvalidPeriodKeyError(f"Invalid month key: {period_key!r}")
        return "month", dt.date(y, mo, 1), dt.date(y, mo, calendar.monthrange(y, mo)[1])
    m = _YEAR_KEY_RE.match(period_key or "")
    if m:
        y = int(m.group(1))
        return "year", dt.date(y, 1, 1), dt.date(y, 12, 31)
    raise InvalidPeriodKeyError(f"Invalid period key: {period_key!r}")


def is_month_closed(period_key: str, today: dt.date) -> bool:
    return period_key < month_key(today)


def is_year_closed(period_key: str, today: dt.date) -> bool:
    return int(period_key) < today.year


def is_period_closed(period_key: str, today: dt.date) -> bool:
    period_type, _start, _end = period_bounds(period_key)
    if period_type == "month":
        return is_month_closed(period_key, today)
    return is_year_closed(period_key, today)


def next_month_key(period_key: str) -> str:
    _t, start, _end = period_bounds(period_key)
    if start.month == 12:
        return f"{start.year + 1:04d}-01"
    return f"{start.year:04d}-{start.month + 1:02d}"


def months_between(start: dt.date, end: dt.date) -> list[str]:
    out: list[str] = []
    if end < start:
        return out
    cur = month_key(start)
    last = month_key(end)
    while cur <= last:
        out.append(cur)
        cur = next_month_key(cur)
    return out


def closed_months_between(start: dt.date, end: dt.date, today: dt.date) -> list[str]:
    return [k for k in months_between(start, end) if is_month_closed(k, today)]


def closed_years_between(start: dt.date, end: dt.date, today: dt.date) -> list[str]:
    return [str(y) for y in range(start.year, end.year + 1) if y < today.year]


def subtract_months(d: dt.date, months: int) -> dt.date:
    total = d.year * 12 + (d.month - 1) - int(months)
    y, m = divmod(total, 12)
    m += 1
    day = min(d.day, calendar.monthrange(y, m)[1])
    return dt.date(y, m, day)


def subtract_years(d: dt.date, years: int) -> dt.date:
    return subtract_months(d, 12 * int(years))


def previous_month_key(today: dt.date) -> str:
    return month_key(subtract_months(today.replace(day=1), 1))


def previous_year_key(today: dt.date) -> str:
    return str(today.year - 1)


def filter_period(records: Iterable[DailyRecord], period_key: str) -> list[DailyRecord]:
    _t, start, end = period_bounds(period_key)
    return [r for r in records if start <= r.date <= end]

