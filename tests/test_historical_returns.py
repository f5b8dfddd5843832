from __future__ import annotations

import datetime as dt

import pytest

from src.core.exceptions import PerformanceStoreError
from src.core.records import DailyRecord, DailySnapshot, PeriodCheckpoint
from src.utils.time import UTC

TODAY = dt.date(2026, 3, 1)
NOW = dt.datetime(2026, 3, 1, 17, 0, tzinfo=UTC)  # Sunday, noon in New York


class FakeStore:
    def __init__(self, fail: bool = False):
        self.daily: dict[tuple[str, str], list[DailyRecord]] = {}
        self.checkpoints: list[tuple[str, str, PeriodCheckpoint]] = []
        self.fail = fail
        self.calls: list[tuple] = []

    def list_daily_records(self, user_id, scope, start=None, end=None):
        self.calls.append(("daily", user_id, scope, start, end))
        if self.fail:
            raise PerformanceStoreError("database unavailable")
        rows = self.daily.get((user_id, scope), [])
        return [r for r in rows if (start is None or r.date >= start) and (end is None or r.date <= end)]

    def list_checkpoints(self, user_id, scope, period_type, start_key, end_key, end_inclusive=True):
        self.calls.append(("checkpoints", user_id, scope, period_type, start_key, end_key))
        if self.fail:
            raise PerformanceStoreError("database unavailable")
        out = []
        for u, s, cp in self.checkpoints:
            if (u, s) != (user_id, scope) or cp.period_type != period_type:
                continue
            if cp.period_key < start_key:
                continue
            if cp.period_key > end_key or (not end_inclusive and cp.period_key == end_key):
                continue
            out.append(cp)
        return sorted(out, key=lambda c: c.period_key)

    def save_checkpoint(self, user_id, scope, checkpoint):
        self.checkpoints = [
            (u, s, c)
            for u, s, c in self.checkpoints
            if not (u == user_id and s == scope and c.period_type == checkpoint.period_type and c.period_key == checkpoint.period_key)
        ]
        self.checkpoints.append((user_id, scope, checkpoint))

    def list_users(self):
        return sorted({u for u, _s in self.daily})

    def list_scopes(self, user_id):
        return sorted({s for u, s in self.daily if u == user_id})


def _history(start: dt.date, end: dt.date, base: float = 10_000.0) -> list[DailyRecord]:
    out = []
    value = base
    d = start
    i = 0
    while d <= end:
        pct = ((i * 29) % 19 - 9) / 10.0
        cf = -100.0 if d.day == 10 else 0.0
        value = value * (1 + pct / 100.0) - cf
        out.append(
            DailyRecord(
                date=d,
                currencies={"USD": DailySnapshot(total_value=value, total_cash_flow=cf, adjusted_change_pct=pct)},
            )
        )
        d += dt.timedelta(days=1)
        i += 1
    return out


def _service(store, **kw):
    from src.core.historical_returns import HistoricalReturnsService

    return HistoricalReturnsService(store, clock=lambda: NOW, **kw)


def _seed_consolidated(store: FakeStore, user: str = "u1", scope: str = "overall") -> list[DailyRecord]:
    from src.core.consolidation_job import backfill_scope

    records = _history(dt.date(2022, 1, 1), TODAY)
    store.daily[(user, scope)] = records
    backfill_scope(store, user, scope, TODAY)
    return records


def test_consolidated_path_matches_full_scan():
    from src.core.factor_chain import scan_daily_records
    from src.core.historical_returns import ReturnsQuery

    store = FakeStore()
    records = _seed_consolidated(store)

    res = _service(store).get_historical_returns(ReturnsQuery(user_id="u1"))
    meta = res["_metadata"]
    assert meta["version"] == "v2"
    # Years 2022-2023, months 2024-01..2026-02, and the single day of March.
    assert (meta["yearlyDocs"], meta["monthlyDocs"], meta["dailyDocs"]) == (2, 26, 1)
    assert meta["docsRead"] == 29
    assert meta["timestamp"] == NOW.isoformat()

    brute = scan_daily_records(records, "USD", TODAY)
    for name, value in brute["returns"].items():
        assert res["returns"][name] == pytest.approx(value, rel=1e-6, abs=1e-9), name


def test_missing_checkpoints_fall_back_to_full_scan():
    from src.core.historical_returns import ReturnsQuery

    store = FakeStore()
    store.daily[("u1", "acct-1")] = _history(dt.date(2025, 1, 1), TODAY)

    res = _service(store).get_historical_returns(ReturnsQuery(user_id="u1", account_ids=("acct-1",)))
    assert res["_metadata"]["version"] == "v1-fallback"
    assert res["_metadata"]["reason"] == "no consolidated data available"
    assert res["_metadata"]["docsRead"] == len(store.daily[("u1", "acct-1")])
    assert res["returns"]["hasOneYearData"] is True
    assert res["returns"]["hasFiveYearData"] is True


def test_no_data_at_all_is_an_empty_v2_result():
    from src.core.factor_chain import empty_returns_result
    from src.core.historical_returns import ReturnsQuery

    res = _service(FakeStore()).get_historical_returns(ReturnsQuery(user_id="nobody"))
    assert res["_metadata"]["version"] == "v2"
    assert res["_metadata"]["empty"] is True
    meta = res.pop("_metadata")
    assert meta["docsRead"] == 0
    assert res == empty_returns_result()


def test_chaining_failure_falls_back(monkeypatch):
    import src.core.historical_returns as hr

    store = FakeStore()
    _seed_consolidated(store)

    def boom(*_a, **_kw):
        raise ZeroDivisionError("corrupt checkpoint")

    monkeypatch.setattr(hr, "chain_factors", boom)
    res = _service(store).get_historical_returns(hr.ReturnsQuery(user_id="u1"))
    assert res["_metadata"]["version"] == "v1-fallback"
    assert res["_metadata"]["reason"].startswith("consolidated computation failed")
    assert res["returns"]["hasYtdData"] is True


def test_store_errors_propagate_without_fallback():
    from src.core.historical_returns import ReturnsQuery

    store = FakeStore(fail=True)
    with pytest.raises(PerformanceStoreError):
        _service(store).get_historical_returns(ReturnsQuery(user_id="u1"))
    # Only the three concurrent consolidated reads were attempted; no full-history scan.
    assert not [c for c in store.calls if c[0] == "daily" and c[3] is None]


def test_multi_account_aggregates_and_reports_missing_accounts():
    from src.core.exceptions import InsufficientDataError
    from src.core.historical_returns import ReturnsQuery

    store = FakeStore()
    store.daily[("u1", "a")] = _history(dt.date(2025, 6, 1), TODAY, base=1000.0)
    store.daily[("u1", "b")] = _history(dt.date(2025, 9, 1), TODAY, base=3000.0)

    res = _service(store).get_historical_returns(ReturnsQuery(user_id="u1", account_ids=("b", "a", "c")))
    meta = res["_metadata"]
    assert meta["version"] == "multi-account"
    assert meta["accountsIncluded"] == ["a", "b"]
    assert meta["accountsMissing"] == ["c"]
    assert res["startDate"] == "2025-06-01"
    assert res["returns"]["hasSixMonthData"] is True

    with pytest.raises(InsufficientDataError):
        _service(store).get_historical_returns(ReturnsQuery(user_id="u1", account_ids=("x", "y")))


def test_multi_account_fetches_in_batches():
    from src.core.historical_returns import ReturnsQuery
    from src.core.performance_config import PerformanceConfig

    store = FakeStore()
    ids = tuple(f"acct-{i:02d}" for i in range(12))
    for aid in ids:
        store.daily[("u1", aid)] = _history(dt.date(2026, 2, 1), TODAY)

    res = _service(store, config=PerformanceConfig(account_batch_size=5)).get_historical_returns(
        ReturnsQuery(user_id="u1", account_ids=ids)
    )
    assert len(res["_metadata"]["accountsIncluded"]) == 12
    assert sorted(c[2] for c in store.calls if c[0] == "daily") == list(ids)


def test_cached_returns_read_through(session_factory):
    from src.core.historical_returns import ReturnsQuery
    from src.core.returns_cache import ReturnsCache

    store = FakeStore()
    _seed_consolidated(store)
    svc = _service(store, cache=ReturnsCache(session_factory))
    q = ReturnsQuery(user_id="u1")

    first = svc.get_cached_historical_returns(q)
    assert first["cacheHit"] is False
    # Sunday: valid until Monday's open.
    assert first["validUntil"] == dt.datetime(2026, 3, 2, 14, 30, tzinfo=UTC).isoformat()
    reads = len(store.calls)

    second = svc.get_cached_historical_returns(q)
    assert second["cacheHit"] is True
    assert second["returns"] == first["returns"]
    assert second["lastCalculated"] == NOW.isoformat()
    assert len(store.calls) == reads

    third = svc.get_cached_historical_returns(q, force_refresh=True)
    assert third["cacheHit"] is False
    assert len(store.calls) > reads


def test_cache_disabled_by_config(session_factory):
    from src.core.historical_returns import ReturnsQuery
    from src.core.performance_config import PerformanceConfig
    from src.core.returns_cache import ReturnsCache

    store = FakeStore()
    svc = _service(store, config=PerformanceConfig(cache_enabled=False), cache=ReturnsCache(session_factory))
    assert svc.get_cached_historical_returns(ReturnsQuery(user_id="u1"))["cacheHit"] is False
    assert svc.get_cached_historical_returns(ReturnsQuery(user_id="u1"))["cacheHit"] is False


def test_consolidation_status():
    store = FakeStore()
    _seed_consolidated(store)
    status = _service(store).consolidation_status("u1")
    assert status["canUseConsolidated"] is True
    assert status["yearlyCheckpoints"] == 2
    assert status["monthlyCheckpoints"] == 26
    assert status["latestMonthly"] == "2026-02"
    assert status["expectedLatestMonthly"] == "2026-02"
    assert status["upToDate"] is True

    empty = _service(FakeStore()).consolidation_status("u1")
    assert empty["canUseConsolidated"] is False
    assert empty["latestMonthly"] is None


def test_query_validation_and_keys():
    from src.core.historical_returns import ReturnsQuery, calculate_fetch_ranges
    from src.core.performance_config import PerformanceConfig

    with pytest.raises(ValueError):
        ReturnsQuery(user_id="")
    with pytest.raises(ValueError):
        ReturnsQuery(user_id="u1", ticker="AAPL")

    q = ReturnsQuery(user_id="u1", currency="EUR", account_ids=("acct-1",), ticker="AAPL", asset_type="stock")
    assert q.strategy == "single"
    assert q.scope == "acct-1"
    assert q.asset_key == "AAPL_stock"
    assert q.cache_key == "EUR_acct-1_AAPL_stock"
    assert ReturnsQuery(user_id="u1", account_ids=("b", "a")).scope == "a,b"

    r = calculate_fetch_ranges(dt.date(2026, 3, 17), PerformanceConfig())
    assert (r.yearly_start, r.yearly_end) == ("2021", "2023")
    assert (r.monthly_start, r.monthly_end) == ("2024-01", "2026-03")
    assert r.daily_start == dt.date(2026, 3, 1)
