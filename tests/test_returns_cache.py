from __future__ import annotations

import datetime as dt

import pytest

from src.utils.time import UTC


def _ny(y, m, d, hh, mm=0):
    from zoneinfo import ZoneInfo

    return dt.datetime(y, m, d, hh, mm, tzinfo=ZoneInfo("America/New_York"))


@pytest.mark.parametrize(
    "now,expected",
    [
        # Wednesday, market open: short intraday TTL.
        (_ny(2025, 6, 11, 11, 0), _ny(2025, 6, 11, 11, 5)),
        # Before the open: valid until today's open.
        (_ny(2025, 6, 11, 8, 0), _ny(2025, 6, 11, 9, 30)),
        # After the close: next morning.
        (_ny(2025, 6, 11, 17, 0), _ny(2025, 6, 12, 9, 30)),
        # Friday after the close, Saturday and Sunday all roll to Monday.
        (_ny(2025, 6, 13, 16, 0), _ny(2025, 6, 16, 9, 30)),
        (_ny(2025, 6, 14, 12, 0), _ny(2025, 6, 16, 9, 30)),
        (_ny(2025, 6, 15, 23, 59), _ny(2025, 6, 16, 9, 30)),
        # Winter time (EST).
        (_ny(2025, 1, 6, 10, 0), _ny(2025, 1, 6, 10, 5)),
    ],
)
def test_dynamic_ttl_follows_market_hours(now, expected):
    from src.core.returns_cache import calculate_dynamic_ttl

    valid_until = calculate_dynamic_ttl(now.astimezone(UTC))
    assert valid_until == expected
    assert valid_until.tzinfo is not None


def test_dynamic_ttl_uses_configured_session():
    from src.core.performance_config import PerformanceConfig
    from src.core.returns_cache import calculate_dynamic_ttl

    cfg = PerformanceConfig(market_open="08:00", market_close="12:00", intraday_ttl_minutes=1)
    assert calculate_dynamic_ttl(_ny(2025, 6, 11, 8, 30), cfg) == _ny(2025, 6, 11, 8, 31)
    assert calculate_dynamic_ttl(_ny(2025, 6, 11, 13, 0), cfg) == _ny(2025, 6, 12, 8, 0)


def test_cache_key_layout():
    from src.core.returns_cache import build_cache_key

    assert build_cache_key("USD", "overall") == "USD_overall"
    assert build_cache_key("EUR", "acct-1", "AAPL", "stock") == "EUR_acct-1_AAPL_stock"
    assert build_cache_key("USD", "acct-1", None, "stock") == "USD_acct-1_stock"


def test_cache_round_trip_expiry_and_invalidation(session_factory):
    from src.core.returns_cache import ReturnsCache

    cache = ReturnsCache(session_factory)
    now = dt.datetime(2025, 6, 11, 15, 0, tzinfo=UTC)
    until = now + dt.timedelta(minutes=5)

    cache.set("u1", "USD_overall", {"returns": {"oneYearReturn": 1.5}}, until, now)
    cache.set("u2", "USD_overall", {"returns": {}}, until, now)

    hit = cache.get("u1", "USD_overall", now + dt.timedelta(minutes=1))
    assert hit is not None
    assert hit.payload["returns"]["oneYearReturn"] == 1.5
    assert hit.last_calculated == now
    assert hit.valid_until == until
    assert cache.get("u1", "USD_overall", until) is None
    assert cache.get("u1", "EUR_overall", now) is None

    # Overwrite refreshes the entry in place.
    cache.set("u1", "USD_overall", {"returns": {"oneYearReturn": 2.0}}, until, now)
    assert cache.get("u1", "USD_overall", now).payload["returns"]["oneYearReturn"] == 2.0

    assert cache.invalidate("u1") == 1
    assert cache.get("u1", "USD_overall", now) is None
    assert cache.get("u2", "USD_overall", now) is not None
    assert cache.invalidate_many(["u2", "u3"]) == 1
    assert cache.invalidate_many([]) == 0
