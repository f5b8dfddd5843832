from __future__ import annotations

import datetime as dt
import logging
from typing import Any

from src.core.consolidation import (
    closed_months_between,
    closed_years_between,
    consolidate_period,
    filter_period,
    is_period_closed,
    period_bounds,
    previous_month_key,
    previous_year_key,
)
from src.core.exceptions import InvalidPeriodKeyError
from src.core.performance_store import PerformanceStore
from src.core.records import PeriodCheckpoint, sort_records

log = logging.getLogger(__name__)


def consolidate_scope_period(
    store: PerformanceStore,
    user_id: str,
    scope: str,
    period_type: str,
    period_key: str,
    today: dt.date,
) -> PeriodCheckpoint | None:
    """
    Consolidate one closed month or year of a scope and persist the checkpoint.

    Years are folded from the daily records directly rather than from monthly checkpoints,
    so a yearly checkpoint only depends on the same data as its months.
    """
    key_type, start, end = period_bounds(period_key)
    if key_type != period_type:
        raise InvalidPeriodKeyError(f"{period_key!r} is not a {period_type} key")
    if not is_period_closed(period_key, today):
        raise InvalidPeriodKeyError(f"{period_key} is still open on {today.isoformat()}")

    records = store.list_daily_records(user_id, scope, start, end)
    cp = consolidate_period(records, period_key, period_type)
    if cp is None:
        log.info("[consolidation] %s/%s %s: nothing to consolidate", user_id, scope, period_key)
        return None
    store.save_checkpoint(user_id, scope, cp)
    log.info("[consolidation] %s/%s %s: %s docs", user_id, scope, period_key, cp.docs_count)
    return cp


def _run_for_all(store: PerformanceStore, period_type: str, period_key: str, today: dt.date) -> dict[str, Any]:
    metrics: dict[str, Any] = {
        "periodType": period_type,
        "periodKey": period_key,
        "usersProcessed": 0,
        "scopesProcessed": 0,
        "consolidationsWritten": 0,
        "errors": 0,
        "errorDetails": [],
    }
    for user_id in store.list_users():
        metrics["usersProcessed"] += 1
        for scope in store.list_scopes(user_id):
            metrics["scopesProcessed"] += 1
            try:
                cp = consolidate_scope_period(store, user_id, scope, period_type, period_key, today)
            except Exception as e:
                # One broken scope must not stop the batch; it is reported in the metrics.
                log.exception("[consolidation] %s/%s %s failed", user_id, scope, period_key)
                metrics["errors"] += 1
                metrics["errorDetails"].append(
                    {"userId": user_id, "scope": scope, "error": f"{type(e).__name__}: {e}"}
                )
                continue
            if cp is not None:
                metrics["consolidationsWritten"] += 1
    log.info(
        "[consolidation] %s %s done: users=%s scopes=%s written=%s errors=%s",
        period_type,
        period_key,
        metrics["usersProcessed"],
        metrics["scopesProcessed"],
        metrics["consolidationsWritten"],
        metrics["errors"],
    )
    return metrics


def run_monthly_consolidation(store: PerformanceStore, today: dt.date) -> dict[str, Any]:
    return _run_for_all(store, "month", previous_month_key(today), today)


def run_yearly_consolidation(store: PerformanceStore, today: dt.date) -> dict[str, Any]:
    return _run_for_all(store, "year", previous_year_key(today), today)


def backfill_scope(store: PerformanceStore, user_id: str, scope: str, today: dt.date) -> dict[str, Any]:
    """Consolidate every closed month and year in the scope's daily history."""
    records = sort_records(store.list_daily_records(user_id, scope))
    summary: dict[str, Any] = {"userId": user_id, "scope": scope, "monthsWritten": [], "yearsWritten": []}
    if not records:
        return summary
    first, last = records[0].date, records[-1].date

    for key in closed_months_between(first, last, today):
        cp = consolidate_period(filter_period(records, key), key, "month")
        if cp is not None:
            store.save_checkpoint(user_id, scope, cp)
            summary["monthsWritten"].append(key)
    for key in closed_years_between(first, last, today):
        cp = consolidate_period(filter_period(records, key), key, "year")
        if cp is not None:
            store.save_checkpoint(user_id, scope, cp)
            summary["yearsWritten"].append(key)

    log.info(
        "[consolidation] backfill %s/%s: %s months, %s years",
        user_id,
        scope,
        len(summary["monthsWritten"]),
        len(summary["yearsWritten"]),
    )
    return summary
