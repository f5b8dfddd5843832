from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Iterable, Optional

from src.core.records import CashFlowEvent

# Modified Dietz results beyond this magnitude (in percent) are cross-checked against the
# simple personal return.
EXTREME_RESULT_PCT = 100.0


def compound(factor: float, pct: Optional[float]) -> float:
    """
    Apply one period's percentage change to a growth factor.

    A missing percentage leaves the factor untouched so a day without change data does not
    corrupt the chain.
    """
    if pct is None:
        return factor
    return factor * (1.0 + float(pct) / 100.0)


def percent_from_factors(start: float, end: float) -> float:
    if not start:
        return 0.0
    return (float(end) / float(start) - 1.0) * 100.0


def chain_link(pcts: Iterable[Optional[float]]) -> float:
    """Geometrically link percentage returns into one percentage."""
    factor = 1.0
    for p in pcts:
        factor = compound(factor, p)
    return (factor - 1.0) * 100.0


def days_between(start: dt.date, end: dt.date) -> int:
    return int((end - start).days)


def simple_personal_return(start_value: float, end_value: float, total_cash_flow: float) -> float:
    """
    Personal (money-weighted) return without per-day cashflow timing.

    `total_cash_flow` is signed from the portfolio's point of view of the upstream records:
    negative means money went in (deposits/buys), positive means money came out.
    """
    start_value = float(start_value or 0.0)
    end_value = float(end_value or 0.0)
    net_deposits = -float(total_cash_flow or 0.0)

    if start_value <= 0:
        if net_deposits <= 0:
            return 0.0
        return (end_value - net_deposits) / net_deposits * 100.0

    investment_base = start_value + net_deposits / 2.0
    if investment_base <= 0:
        # Withdrawals larger than the opening value: measure against the opening value alone.
        investment_base = start_value
    gain = end_value - start_value - net_deposits
    return gain / investment_base * 100.0


def midpoint_dietz_return(start_value: float, end_value: float, total_cash_flow: float) -> float:
    """
    Modified Dietz with every cashflow assumed to happen at mid-period.

    Used at checkpoint granularity where per-day cashflow timing is not stored.
    """
    start_value = float(start_value or 0.0)
    total_cash_flow = float(total_cash_flow or 0.0)
    if start_value == 0 and total_cash_flow == 0:
        return 0.0
    net_deposits = -total_cash_flow
    investment_base = start_value + net_deposits / 2.0
    if investment_base <= 0:
        return 0.0
    gain = float(end_value or 0.0) - start_value - net_deposits
    return gain / investment_base * 100.0


@dataclass(frozen=True)
class DietzResult:
    value: float
    dietz: float | None
    simple: float | None
    method: str  # "dietz" | "simple" | "simple_zero_days" | "simple_bad_denominator"


def modified_dietz_detail(
    start_value: float,
    end_value: float,
    cash_flows: list[CashFlowEvent],
    start_date: dt.date,
    end_date: dt.date,
) -> DietzResult:
    """
    Modified Dietz personal return, reporting both candidate values.

    Weight of each cashflow is the fraction of the period remaining after it occurs.
    When the Dietz figure exceeds +/-100% it is compared with the simple personal return
    and the smaller magnitude wins. This is a pragmatic guard for tiny denominators, not a
    mathematically rigorous correction; `DietzResult` keeps both numbers for callers that
    want to show them.
    """
    total_cf = sum(float(cf.amount) for cf in cash_flows)
    total_days = days_between(start_date, end_date)
    if total_days <= 0:
        simple = simple_personal_return(start_value, end_value, total_cf)
        return DietzResult(value=simple, dietz=None, simple=simple, method="simple_zero_days")

    weighted_cf = 0.0
    for cf in cash_flows:
        w = days_between(cf.date, end_date) / float(total_days)
        if w < 0:
            w = 0.0
        elif w > 1:
            w = 1.0
        weighted_cf += float(cf.amount) * w

    start_value = float(start_value or 0.0)
    denominator = start_value - weighted_cf
    if denominator <= 0:
        simple = simple_personal_return(start_value, end_value, total_cf)
        return DietzResult(value=simple, dietz=None, simple=simple, method="simple_bad_denominator")

    numerator = float(end_value or 0.0) - start_value + total_cf
    dietz = numerator / denominator * 100.0
    if abs(dietz) > EXTREME_RESULT_PCT:
        simple = simple_personal_return(start_value, end_value, total_cf)
        if abs(simple) < abs(dietz):
            return DietzResult(value=simple, dietz=dietz, simple=simple, method="simple")
        return DietzResult(value=dietz, dietz=dietz, simple=simple, method="dietz")
    return DietzResult(value=dietz, dietz=dietz, simple=None, method="dietz")


def modified_dietz_return(
    start_value: float,
    end_value: float,
    cash_flows: list[CashFlowEvent],
    start_date: dt.date,
    end_date: dt.date,
) -> float:
    return modified_dietz_detail(start_value, end_value, cash_flows, start_date, end_date).value
