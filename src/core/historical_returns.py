from __future__ import annotations

import datetime as dt
import logging
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable

from src.core.aggregation import OVERALL_SCOPE, aggregate_account_series, chunked, determine_strategy
from src.core.consolidation import month_key, previous_month_key, previous_year_key, subtract_years
from src.core.exceptions import InsufficientDataError, PerformanceStoreError
from src.core.factor_chain import chain_factors, empty_returns_result, scan_daily_records
from src.core.performance_config import PerformanceConfig
from src.core.performance_store import PerformanceStore
from src.core.records import DailyRecord, PeriodCheckpoint, asset_key
from src.core.returns_cache import ReturnsCache, build_cache_key, calculate_dynamic_ttl
from src.utils.time import ensure_utc, local_today, utcnow

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReturnsQuery:
    user_id: str
    currency: str = "USD"
    account_ids: tuple[str, ...] = field(default_factory=tuple)
    ticker: str | None = None
    asset_type: str | None = None

    def __post_init__(self) -> None:
        if not (self.user_id or "").strip():
            raise ValueError("user_id is required")
        if not (self.currency or "").strip():
            raise ValueError("currency is required")
        if bool(self.ticker) != bool(self.asset_type):
            raise ValueError("ticker and asset_type must be given together")

    @property
    def strategy(self) -> str:
        return determine_strategy(list(self.account_ids))

    @property
    def scope(self) -> str:
        if self.strategy == "overall":
            return OVERALL_SCOPE
        if self.strategy == "single":
            return self.account_ids[0]
        return ",".join(sorted(set(self.account_ids)))

    @property
    def asset_key(self) -> str | None:
        if self.ticker and self.asset_type:
            return asset_key(self.ticker, self.asset_type)
        return None

    @property
    def cache_key(self) -> str:
        return build_cache_key(self.currency, self.scope, self.ticker, self.asset_type)


@dataclass(frozen=True)
class FetchRanges:
    yearly_start: str
    yearly_end: str
    monthly_start: str
    monthly_end: str  # exclusive: the open current month is read day by day
    daily_start: dt.date
    daily_end: dt.date


def calculate_fetch_ranges(today: dt.date, config: PerformanceConfig) -> FetchRanges:
    yearly_from = subtract_years(today, config.yearly_lookback_years)
    monthly_from = subtract_years(today, config.monthly_lookback_years)
    return FetchRanges(
        yearly_start=str(yearly_from.year),
        yearly_end=str(monthly_from.year - 1),
        monthly_start=f"{monthly_from.year:04d}-01",
        monthly_end=month_key(today),
        daily_start=today.replace(day=1),
        daily_end=today,
    )


def _elapsed_ms(t0: float) -> float:
    return round((time.perf_counter() - t0) * 1000.0, 1)


class HistoricalReturnsService:
    """
    Serves window returns for one user query.

    The consolidated path chains stored yearly/monthly checkpoints with the current month's
    daily records. Missing checkpoints, or a failure while chaining them, fall back to a full
    scan of the daily history. Store errors are never treated as missing data.
    """

    def __init__(
        self,
        store: PerformanceStore,
        config: PerformanceConfig | None = None,
        clock: Callable[[], dt.datetime] | None = None,
        cache: ReturnsCache | None = None,
    ):
        self.store = store
        self.config = config or PerformanceConfig()
        self.clock = clock or utcnow
        self.cache = cache

    def _now(self) -> dt.datetime:
        return ensure_utc(self.clock())

    def today(self) -> dt.date:
        return local_today(self.config.timezone, self._now())

    def get_historical_returns(self, query: ReturnsQuery) -> dict[str, Any]:
        strategy = query.strategy
        log.info(
            "[historical_returns] user=%s scope=%s currency=%s strategy=%s",
            query.user_id,
            query.scope,
            query.currency,
            strategy,
        )
        if strategy == "multi":
            return self._multi_account_returns(query)
        return self._single_scope_returns(query, query.scope)

    # Consolidated path ---------------------------------------------------------

    def _fetch_consolidated(
        self, user_id: str, scope: str, ranges: FetchRanges
    ) -> tuple[list[PeriodCheckpoint], list[PeriodCheckpoint], list[DailyRecord]]:
        with ThreadPoolExecutor(max_workers=self.config.fetch_workers, thread_name_prefix="returns") as pool:
            yearly_f = pool.submit(
                self.store.list_checkpoints, user_id, scope, "year", ranges.yearly_start, ranges.yearly_end, True
            )
            monthly_f = pool.submit(
                self.store.list_checkpoints, user_id, scope, "month", ranges.monthly_start, ranges.monthly_end, False
            )
            daily_f = pool.submit(self.store.list_daily_records, user_id, scope, ranges.daily_start, ranges.daily_end)
            # .result() re-raises store errors in the calling thread.
            return yearly_f.result(), monthly_f.result(), daily_f.result()

    def _single_scope_returns(self, query: ReturnsQuery, scope: str) -> dict[str, Any]:
        t0 = time.perf_counter()
        today = self.today()
        ranges = calculate_fetch_ranges(today, self.config)
        yearly, monthly, daily = self._fetch_consolidated(query.user_id, scope, ranges)
        log.info(
            "[historical_returns] fetched yearly=%s monthly=%s daily=%s in %sms",
            len(yearly),
            len(monthly),
            len(daily),
            _elapsed_ms(t0),
        )

        if not yearly and not monthly:
            return self._fallback_returns(query, scope, today, t0, reason="no consolidated data available")

        try:
            result = chain_factors(yearly, monthly, daily, query.currency, today, query.asset_key)
        except PerformanceStoreError:
            raise
        except Exception as e:
            log.exception("[historical_returns] consolidated computation failed for user=%s scope=%s", query.user_id, scope)
            return self._fallback_returns(query, scope, today, t0, reason=f"consolidated computation failed: {e}")

        result["_metadata"] = {
            "version": "v2",
            "duration": _elapsed_ms(t0),
            "docsRead": len(yearly) + len(monthly) + len(daily),
            "yearlyDocs": len(yearly),
            "monthlyDocs": len(monthly),
            "dailyDocs": len(daily),
            "timestamp": self._now().isoformat(),
        }
        return result

    def _fallback_returns(
        self, query: ReturnsQuery, scope: str, today: dt.date, t0: float, *, reason: str
    ) -> dict[str, Any]:
        records = self.store.list_daily_records(query.user_id, scope)
        if not records:
            log.info("[historical_returns] no data for user=%s scope=%s", query.user_id, scope)
            result = empty_returns_result()
            result["_metadata"] = {
                "version": "v2",
                "empty": True,
                "duration": _elapsed_ms(t0),
                "docsRead": 0,
                "timestamp": self._now().isoformat(),
            }
            return result

        log.warning(
            "[historical_returns] falling back to full scan for user=%s scope=%s (%s, %s docs)",
            query.user_id,
            scope,
            reason,
            len(records),
        )
        result = scan_daily_records(records, query.currency, today, query.asset_key)
        result["_metadata"] = {
            "version": "v1-fallback",
            "reason": reason,
            "duration": _elapsed_ms(t0),
            "docsRead": len(records),
            "timestamp": self._now().isoformat(),
        }
        return result

    # Multi-account path --------------------------------------------------------

    def _multi_account_returns(self, query: ReturnsQuery) -> dict[str, Any]:
        t0 = time.perf_counter()
        today = self.today()
        account_ids = sorted(set(query.account_ids))
        series: dict[str, list[DailyRecord]] = {}
        for batch in chunked(account_ids, self.config.account_batch_size):
            with ThreadPoolExecutor(max_workers=self.config.fetch_workers, thread_name_prefix="accounts") as pool:
                futures = {aid: pool.submit(self.store.list_daily_records, query.user_id, aid) for aid in batch}
                for aid, fut in futures.items():
                    series[aid] = fut.result()

        included = [aid for aid in account_ids if series.get(aid)]
        missing = [aid for aid in account_ids if not series.get(aid)]
        if not included:
            raise InsufficientDataError(f"No performance data for accounts: {', '.join(account_ids)}")
        if missing:
            log.warning("[historical_returns] accounts without data: %s", ", ".join(missing))

        combined = aggregate_account_series({aid: series[aid] for aid in included})
        result = scan_daily_records(combined, query.currency, today, query.asset_key)
        result["_metadata"] = {
            "version": "multi-account",
            "accountsIncluded": included,
            "accountsMissing": missing,
            "duration": _elapsed_ms(t0),
            "docsRead": sum(len(series[aid]) for aid in included),
            "timestamp": self._now().isoformat(),
        }
        return result

    # Cache wrapper -------------------------------------------------------------

    def get_cached_historical_returns(self, query: ReturnsQuery, *, force_refresh: bool = False) -> dict[str, Any]:
        now = self._now()
        use_cache = self.cache is not None and self.config.cache_enabled
        if use_cache and not force_refresh:
            try:
                hit = self.cache.get(query.user_id, query.cache_key, now)
            except PerformanceStoreError as e:
                log.warning("[historical_returns] cache read failed, recomputing: %s", e)
                hit = None
            if hit is not None:
                log.info("[historical_returns] cache hit user=%s key=%s", query.user_id, query.cache_key)
                out = dict(hit.payload)
                out["cacheHit"] = True
                out["lastCalculated"] = hit.last_calculated.isoformat()
                out["validUntil"] = hit.valid_until.isoformat()
                return out

        result = self.get_historical_returns(query)
        valid_until = calculate_dynamic_ttl(now, self.config)
        if use_cache:
            try:
                self.cache.set(query.user_id, query.cache_key, result, valid_until, now)
            except PerformanceStoreError as e:
                log.warning("[historical_returns] cache write failed: %s", e)
        out = dict(result)
        out["cacheHit"] = False
        out["lastCalculated"] = now.isoformat()
        out["validUntil"] = valid_until.isoformat()
        return out

    # Status --------------------------------------------------------------------

    def consolidation_status(self, user_id: str, scope: str = OVERALL_SCOPE) -> dict[str, Any]:
        today = self.today()
        ranges = calculate_fetch_ranges(today, self.config)
        yearly = self.store.list_checkpoints(user_id, scope, "year", ranges.yearly_start, ranges.yearly_end, True)
        monthly = self.store.list_checkpoints(
            user_id, scope, "month", ranges.monthly_start, ranges.monthly_end, False
        )
        month_keys = [c.period_key for c in monthly]
        year_keys = [c.period_key for c in yearly]
        expected_month = previous_month_key(today)
        return {
            "userId": user_id,
            "scope": scope,
            "yearlyCheckpoints": len(yearly),
            "monthlyCheckpoints": len(monthly),
            "latestYearly": max(year_keys) if year_keys else None,
            "latestMonthly": max(month_keys) if month_keys else None,
            "expectedLatestYearly": previous_year_key(today),
            "expectedLatestMonthly": expected_month,
            "upToDate": expected_month in month_keys,
            "canUseConsolidated": bool(yearly or monthly),
        }
