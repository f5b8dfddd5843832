from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from typing import Iterable, Sequence, TypeVar

from src.core.records import DailyRecord, DailySnapshot, sort_records

OVERALL_SCOPE = "overall"

T = TypeVar("T")


def determine_strategy(account_ids: Sequence[str] | None) -> str:
    """
    Pick how a dashboard selection is served.

    - "overall": nothing selected, or the pre-aggregated overall scope is part of the selection
    - "single": exactly one account
    - "multi": several accounts, merged with `aggregate_account_series`
    """
    if not account_ids:
        return "overall"
    if OVERALL_SCOPE in account_ids:
        return "overall"
    if len(account_ids) == 1:
        return "single"
    return "multi"


def chunked(items: Sequence[T], size: int = 10) -> list[list[T]]:
    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def opening_value(value: float, change_pct: float) -> float:
    """
    Value before the day's change was applied.

    Weighting by the post-change value would let the very change being measured inflate
    its own weight.
    """
    if change_pct == 0:
        return value
    growth = 1.0 + change_pct / 100.0
    if growth == 0:
        return 0.0
    return value / growth


@dataclass
class _SnapshotSum:
    total_value: float = 0.0
    has_value: bool = False
    total_investment: float = 0.0
    has_investment: bool = False
    total_cash_flow: float = 0.0
    done_pnl: float = 0.0
    has_done_pnl: bool = False
    unrealized_pnl: float = 0.0
    has_unrealized_pnl: bool = False
    adj_weighted: float = 0.0
    adj_weight: float = 0.0
    adj_seen: bool = False
    raw_weighted: float = 0.0
    raw_weight: float = 0.0
    raw_seen: bool = False
    assets: dict[str, "_SnapshotSum"] = field(default_factory=dict)

    def add(self, snap: DailySnapshot, *, with_assets: bool) -> None:
        value = snap.total_value
        if value is not None:
            self.total_value += value
            self.has_value = True
        if snap.total_investment is not None:
            self.total_investment += snap.total_investment
            self.has_investment = True
        self.total_cash_flow += snap.total_cash_flow or 0.0
        if snap.done_pnl is not None:
            self.done_pnl += snap.done_pnl
            self.has_done_pnl = True
        if snap.unrealized_pnl is not None:
            self.unrealized_pnl += snap.unrealized_pnl
            self.has_unrealized_pnl = True

        # Accounts without a change percentage still add to the sums above, but carry no
        # information for the weighted change.
        if snap.adjusted_change_pct is not None:
            w = opening_value(value or 0.0, snap.adjusted_change_pct)
            self.adj_weighted += w * snap.adjusted_change_pct
            self.adj_weight += w
            self.adj_seen = True
        if snap.daily_change_pct is not None:
            w = opening_value(value or 0.0, snap.daily_change_pct)
            self.raw_weighted += w * snap.daily_change_pct
            self.raw_weight += w
            self.raw_seen = True

        if with_assets:
            for key, asset in snap.assets.items():
                acc = self.assets.get(key)
                if acc is None:
                    acc = _SnapshotSum()
                    self.assets[key] = acc
                acc.add(asset, with_assets=False)

    def finalize(self) -> DailySnapshot:
        return DailySnapshot(
            total_value=self.total_value if self.has_value else None,
            total_investment=self.total_investment if self.has_investment else None,
            total_cash_flow=self.total_cash_flow,
            adjusted_change_pct=weighted_change(self.adj_weighted, self.adj_weight) if self.adj_seen else None,
            daily_change_pct=weighted_change(self.raw_weighted, self.raw_weight) if self.raw_seen else None,
            done_pnl=self.done_pnl if self.has_done_pnl else None,
            unrealized_pnl=self.unrealized_pnl if self.has_unrealized_pnl else None,
            assets={k: self.assets[k].finalize() for k in sorted(self.assets)},
        )


def weighted_change(weighted_sum: float, weight: float) -> float:
    if weight == 0:
        return 0.0
    return weighted_sum / weight


def aggregate_account_series(series_by_account: dict[str, Iterable[DailyRecord]]) -> list[DailyRecord]:
    """
    Merge per-account daily series into one synthetic series.

    Dates are the union over all accounts; on each date only the accounts that have a record
    contribute. The output has the same shape as a single-account series, so it can be fed
    to consolidation and factor chaining unchanged.
    """
    by_date: dict[dt.date, dict[str, _SnapshotSum]] = {}
    for account_id in sorted(series_by_account):
        for rec in sort_records(series_by_account[account_id]):
            day = by_date.setdefault(rec.date, {})
            for code, snap in rec.currencies.items():
                acc = day.get(code)
                if acc is None:
                    acc = _SnapshotSum()
                    day[code] = acc
                acc.add(snap, with_assets=True)

    out: list[DailyRecord] = []
    for d in sorted(by_date):
        day = by_date[d]
        out.append(DailyRecord(date=d, currencies={code: day[code].finalize() for code in sorted(day)}))
    return out
