from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.core.exceptions import PerformanceStoreError
from src.core.performance_config import PerformanceConfig
from src.db.models import ReturnsCacheEntry
from src.utils.time import UTC, ensure_utc, utcnow, zone

log = logging.getLogger(__name__)


def build_cache_key(
    currency: str,
    account_id: str,
    ticker: str | None = None,
    asset_type: str | None = None,
) -> str:
    key = f"{currency}_{account_id}"
    if ticker:
        key += f"_{ticker}"
    if asset_type:
        key += f"_{asset_type}"
    return key


def calculate_dynamic_ttl(now: dt.datetime | None = None, config: PerformanceConfig | None = None) -> dt.datetime:
    """
    Return the UTC instant until which freshly computed returns stay valid.

    While the exchange is open prices move, so results live for a few minutes. Outside trading
    hours nothing changes until the next open (weekends roll to Monday). Exchange holidays are
    treated as trading days.
    """
    cfg = config or PerformanceConfig()
    now_utc = ensure_utc(now or utcnow())
    tz = zone(cfg.timezone)
    local = now_utc.astimezone(tz)
    open_t = cfg.market_open_time
    close_t = cfg.market_close_time

    is_weekday = local.weekday() < 5
    if is_weekday and open_t <= local.time() < close_t:
        return now_utc + dt.timedelta(minutes=cfg.intraday_ttl_minutes)

    day = local.date()
    if not (is_weekday and local.time() < open_t):
        day += dt.timedelta(days=1)
    while day.weekday() >= 5:
        day += dt.timedelta(days=1)
    next_open = dt.datetime.combine(day, open_t, tzinfo=tz)
    return next_open.astimezone(UTC)


@dataclass(frozen=True)
class CachedReturns:
    payload: dict[str, Any]
    last_calculated: dt.datetime
    valid_until: dt.datetime


class ReturnsCache:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory

    def _fail(self, op: str, e: SQLAlchemyError) -> PerformanceStoreError:
        log.warning("[returns_cache] %s failed: %s", op, e)
        return PerformanceStoreError(f"cache {op} failed: {type(e).__name__}: {e}")

    def get(self, user_id: str, key: str, now: dt.datetime | None = None) -> CachedReturns | None:
        now_utc = ensure_utc(now or utcnow())
        try:
            with self._factory() as session:
                row = session.execute(
                    select(ReturnsCacheEntry).where(
                        ReturnsCacheEntry.user_id == user_id,
                        ReturnsCacheEntry.cache_key == key,
                    )
                ).scalar_one_or_none()
                if row is None or row.valid_until <= now_utc:
                    return None
                return CachedReturns(
                    payload=dict(row.payload_json or {}),
                    last_calculated=row.last_calculated,
                    valid_until=row.valid_until,
                )
        except SQLAlchemyError as e:
            raise self._fail("get", e) from e

    def set(
        self,
        user_id: str,
        key: str,
        payload: dict[str, Any],
        valid_until: dt.datetime,
        now: dt.datetime | None = None,
    ) -> None:
        now_utc = ensure_utc(now or utcnow())
        try:
            with self._factory() as session:
                row = session.execute(
                    select(ReturnsCacheEntry).where(
                        ReturnsCacheEntry.user_id == user_id,
                        ReturnsCacheEntry.cache_key == key,
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = ReturnsCacheEntry(user_id=user_id, cache_key=key)
                    session.add(row)
                row.payload_json = payload
                row.last_calculated = now_utc
                row.valid_until = ensure_utc(valid_until)
                session.commit()
        except SQLAlchemyError as e:
            raise self._fail("set", e) from e

    def invalidate(self, user_id: str) -> int:
        return self.invalidate_many([user_id])

    def invalidate_many(self, user_ids: Iterable[str]) -> int:
        ids = sorted({str(u) for u in user_ids if u})
        if not ids:
            return 0
        try:
            with self._factory() as session:
                res = session.execute(delete(ReturnsCacheEntry).where(ReturnsCacheEntry.user_id.in_(ids)))
                session.commit()
                removed = int(res.rowcount or 0)
        except SQLAlchemyError as e:
            raise self._fail("invalidate", e) from e
        log.info("[returns_cache] invalidated %s entries for %s user(s)", removed, len(ids))
        return removed
