from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional


PERIOD_TYPES = ("month", "year")


def _as_float(v: Any) -> float | None:
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        out = float(v)
    else:
        s = str(v).strip()
        if not s:
            return None
        try:
            out = float(s)
        except Exception:
            return None
    if not math.isfinite(out):
        return None
    return out


def _factor(v: Any) -> float:
    # A stored 0.0 is a total loss, not a missing factor.
    f = _as_float(v)
    return f if f is not None else 1.0


def parse_date(v: Any) -> dt.date | None:
    if v is None:
        return None
    if isinstance(v, dt.datetime):
        return v.date()
    if isinstance(v, dt.date):
        return v
    s = str(v).strip()
    if not s:
        return None
    try:
        return dt.date.fromisoformat(s[:10])
    except Exception:
        return None


def asset_key(ticker: str, asset_type: str) -> str:
    return f"{ticker}_{asset_type}"


@dataclass(frozen=True)
class DailySnapshot:
    """One currency (or one asset inside a currency) of a daily performance record."""

    total_value: float | None = None
    total_investment: float | None = None
    total_cash_flow: float = 0.0
    adjusted_change_pct: float | None = None
    daily_change_pct: float | None = None
    done_pnl: float | None = None
    unrealized_pnl: float | None = None
    assets: dict[str, "DailySnapshot"] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailySnapshot":
        assets: dict[str, DailySnapshot] = {}
        raw_assets = data.get("assetPerformance") or {}
        if isinstance(raw_assets, dict):
            for key, raw in raw_assets.items():
                if isinstance(raw, dict):
                    assets[str(key)] = cls.from_dict(raw)
        return cls(
            total_value=_as_float(data.get("totalValue")),
            total_investment=_as_float(data.get("totalInvestment")),
            total_cash_flow=_as_float(data.get("totalCashFlow")) or 0.0,
            adjusted_change_pct=_as_float(data.get("adjustedDailyChangePercentage")),
            daily_change_pct=_as_float(data.get("dailyChangePercentage")),
            done_pnl=_as_float(data.get("doneProfitAndLoss")),
            unrealized_pnl=_as_float(data.get("unrealizedProfitAndLoss")),
            assets=assets,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"totalCashFlow": self.total_cash_flow}
        if self.total_value is not None:
            out["totalValue"] = self.total_value
        if self.total_investment is not None:
            out["totalInvestment"] = self.total_investment
        if self.adjusted_change_pct is not None:
            out["adjustedDailyChangePercentage"] = self.adjusted_change_pct
        if self.daily_change_pct is not None:
            out["dailyChangePercentage"] = self.daily_change_pct
        if self.done_pnl is not None:
            out["doneProfitAndLoss"] = self.done_pnl
        if self.unrealized_pnl is not None:
            out["unrealizedProfitAndLoss"] = self.unrealized_pnl
        if self.assets:
            out["assetPerformance"] = {k: a.to_dict() for k, a in sorted(self.assets.items())}
        return out


def _looks_like_currency(value: Any) -> bool:
    # Cash-flow-only days carry neither a value nor a change percentage but still count.
    return isinstance(value, dict)


@dataclass(frozen=True)
class DailyRecord:
    date: dt.date
    currencies: dict[str, DailySnapshot] = field(default_factory=dict)

    def snapshot(self, currency: str, asset: str | None = None) -> DailySnapshot | None:
        snap = self.currencies.get(currency)
        if snap is None or asset is None:
            return snap
        return snap.assets.get(asset)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DailyRecord":
        d = parse_date(data.get("date"))
        if d is None:
            raise ValueError(f"daily record without a valid date: {data.get('date')!r}")
        currencies = {
            str(k): DailySnapshot.from_dict(v) for k, v in data.items() if k != "date" and _looks_like_currency(v)
        }
        return cls(date=d, currencies=currencies)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"date": self.date.isoformat()}
        for code in sorted(self.currencies):
            out[code] = self.currencies[code].to_dict()
        return out


def sort_records(records: Iterable[DailyRecord]) -> list[DailyRecord]:
    """Order by date; a duplicated date keeps the last record seen."""
    by_date: dict[dt.date, DailyRecord] = {}
    for r in records:
        by_date[r.date] = r
    return [by_date[d] for d in sorted(by_date)]


@dataclass(frozen=True)
class CashFlowEvent:
    date: dt.date
    amount: float


@dataclass(frozen=True)
class PeriodSummary:
    """Consolidated figures for one currency (or one asset) over a closed period."""

    start_factor: float
    end_factor: float
    period_return_pct: float
    start_total_value: float
    end_total_value: float
    start_total_investment: float
    end_total_investment: float
    total_cash_flow: float
    personal_return_pct: float
    docs_count: int
    valid_docs_count: int
    assets: dict[str, "PeriodSummary"] = field(default_factory=dict)

    @property
    def factor_ratio(self) -> float:
        if not self.start_factor:
            return 1.0
        return self.end_factor / self.start_factor

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "startFactor": self.start_factor,
            "endFactor": self.end_factor,
            "periodReturnPct": self.period_return_pct,
            "startTotalValue": self.start_total_value,
            "endTotalValue": self.end_total_value,
            "startTotalInvestment": self.start_total_investment,
            "endTotalInvestment": self.end_total_investment,
            "totalCashFlow": self.total_cash_flow,
            "personalReturnPct": self.personal_return_pct,
            "docsCount": self.docs_count,
            "validDocsCount": self.valid_docs_count,
        }
        if self.assets:
            out["assetPerformance"] = {k: a.to_dict() for k, a in sorted(self.assets.items())}
        return out

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PeriodSummary":
        assets = {
            str(k): cls.from_dict(v)
            for k, v in (data.get("assetPerformance") or {}).items()
            if isinstance(v, dict)
        }
        return cls(
            start_factor=_factor(data.get("startFactor")),
            end_factor=_factor(data.get("endFactor")),
            period_return_pct=_as_float(data.get("periodReturnPct")) or 0.0,
            start_total_value=_as_float(data.get("startTotalValue")) or 0.0,
            end_total_value=_as_float(data.get("endTotalValue")) or 0.0,
            start_total_investment=_as_float(data.get("startTotalInvestment")) or 0.0,
            end_total_investment=_as_float(data.get("endTotalInvestment")) or 0.0,
            total_cash_flow=_as_float(data.get("totalCashFlow")) or 0.0,
            personal_return_pct=_as_float(data.get("personalReturnPct")) or 0.0,
            docs_count=int(data.get("docsCount") or 0),
            valid_docs_count=int(data.get("validDocsCount") or 0),
            assets=assets,
        )


@dataclass(frozen=True)
class PeriodCheckpoint:
    period_type: str
    period_key: str
    start_date: dt.date
    end_date: dt.date
    docs_count: int
    currencies: dict[str, PeriodSummary] = field(default_factory=dict)

    def summary(self, currency: str, asset: str | None = None) -> PeriodSummary | None:
        s = self.currencies.get(currency)
        if s is None or asset is None:
            return s
        return s.assets.get(asset)


@dataclass
class PeriodWindow:
    """Per-query accumulator for one return window (1M, YTD, 5Y, ...)."""

    key: str
    boundary_date: dt.date
    start_factor: float = 1.0
    current_factor: float = 1.0
    found: bool = False
    start_value: Optional[float] = None
    end_value: Optional[float] = None
    total_cash_flow: float = 0.0
    docs_count: int = 0
