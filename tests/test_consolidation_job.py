from __future__ import annotations

import datetime as dt

import pytest

from src.core.records import DailyRecord, DailySnapshot


def _days(start: dt.date, n: int, value: float = 100.0) -> list[DailyRecord]:
    return [
        DailyRecord(
            date=start + dt.timedelta(days=i),
            currencies={"USD": DailySnapshot(total_value=value + i, adjusted_change_pct=1.0)},
        )
        for i in range(n)
    ]


def _store(session_factory):
    from src.core.performance_store import SqlPerformanceStore

    return SqlPerformanceStore(session_factory)


def test_consolidate_scope_period_writes_checkpoint(session_factory):
    from src.core.consolidation_job import consolidate_scope_period

    store = _store(session_factory)
    store.save_daily_records("u1", "overall", _days(dt.date(2025, 1, 25), 15))

    cp = consolidate_scope_period(store, "u1", "overall", "month", "2025-01", dt.date(2025, 2, 10))
    assert cp is not None
    assert cp.docs_count == 7  # Jan 25 .. Jan 31
    saved = store.list_checkpoints("u1", "overall", "month", "2025-01", "2025-01")
    assert [c.period_key for c in saved] == ["2025-01"]
    assert saved[0].summary("USD").end_total_value == 106.0


def test_open_or_mismatched_periods_are_refused(session_factory):
    from src.core.consolidation_job import consolidate_scope_period
    from src.core.exceptions import InvalidPeriodKeyError

    store = _store(session_factory)
    with pytest.raises(InvalidPeriodKeyError):
        consolidate_scope_period(store, "u1", "overall", "month", "2025-02", dt.date(2025, 2, 10))
    with pytest.raises(InvalidPeriodKeyError):
        consolidate_scope_period(store, "u1", "overall", "year", "2025-01", dt.date(2025, 2, 10))
    with pytest.raises(InvalidPeriodKeyError):
        consolidate_scope_period(store, "u1", "overall", "year", "2025", dt.date(2025, 12, 31))


def test_monthly_run_covers_every_user_and_scope(session_factory):
    from src.core.consolidation_job import run_monthly_consolidation

    store = _store(session_factory)
    store.save_daily_records("u1", "overall", _days(dt.date(2025, 1, 1), 40))
    store.save_daily_records("u1", "acct-1", _days(dt.date(2025, 1, 1), 40))
    # Only February data: nothing to write for January.
    store.save_daily_records("u2", "overall", _days(dt.date(2025, 2, 1), 5))

    metrics = run_monthly_consolidation(store, dt.date(2025, 2, 10))
    assert metrics["periodKey"] == "2025-01"
    assert metrics["usersProcessed"] == 2
    assert metrics["scopesProcessed"] == 3
    assert metrics["consolidationsWritten"] == 2
    assert metrics["errors"] == 0


def test_run_records_failures_and_continues(session_factory, monkeypatch):
    import src.core.consolidation_job as job

    store = _store(session_factory)
    store.save_daily_records("u1", "overall", _days(dt.date(2024, 12, 1), 31))
    store.save_daily_records("u1", "acct-1", _days(dt.date(2024, 12, 1), 31))

    real = job.consolidate_period

    def flaky(records, period_key, period_type):
        if any(r.snapshot("USD").total_value == 100.0 for r in records) and flaky.calls == 0:
            flaky.calls += 1
            raise ValueError("bad payload")
        return real(records, period_key, period_type)

    flaky.calls = 0
    monkeypatch.setattr(job, "consolidate_period", flaky)

    metrics = job.run_yearly_consolidation(store, dt.date(2025, 1, 5))
    assert metrics["periodKey"] == "2024"
    assert metrics["errors"] == 1
    assert metrics["consolidationsWritten"] == 1
    assert metrics["errorDetails"][0]["scope"] == "acct-1"
    assert "ValueError" in metrics["errorDetails"][0]["error"]


def test_backfill_consolidates_all_closed_periods(session_factory):
    from src.core.consolidation_job import backfill_scope

    store = _store(session_factory)
    store.save_daily_records("u1", "overall", _days(dt.date(2024, 11, 20), 100))  # through 2025-02-27

    summary = backfill_scope(store, "u1", "overall", dt.date(2025, 2, 28))
    assert summary["monthsWritten"] == ["2024-11", "2024-12", "2025-01"]
    assert summary["yearsWritten"] == ["2024"]

    year = store.list_checkpoints("u1", "overall", "year", "2024", "2024")[0]
    assert year.start_date == dt.date(2024, 11, 20)
    assert year.end_date == dt.date(2024, 12, 31)
    assert backfill_scope(store, "u1", "nothing", dt.date(2025, 2, 28))["monthsWritten"] == []
