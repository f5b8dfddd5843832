from __future__ import annotations

import datetime as dt
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class PerformanceConfig(BaseModel):
    timezone: str = "America/New_York"  # exchange calendar used for cache validity
    yearly_lookback_years: int = Field(default=5, ge=1)
    monthly_lookback_years: int = Field(default=2, ge=1)
    fetch_workers: int = Field(default=3, ge=1)
    account_batch_size: int = Field(default=10, ge=1)
    cache_enabled: bool = True
    market_open: str = "09:30"
    market_close: str = "16:00"
    intraday_ttl_minutes: int = Field(default=5, ge=1)

    @field_validator("market_open", "market_close")
    @classmethod
    def _check_hhmm(cls, v: str) -> str:
        parse_hhmm(v)
        return v

    @property
    def market_open_time(self) -> dt.time:
        return parse_hhmm(self.market_open)

    @property
    def market_close_time(self) -> dt.time:
        return parse_hhmm(self.market_close)


def parse_hhmm(value: str) -> dt.time:
    try:
        hh, mm = str(value).strip().split(":", 1)
        return dt.time(int(hh), int(mm))
    except (TypeError, ValueError) as e:
        raise ValueError(f"expected HH:MM, got {value!r}") from e


def _candidate_paths() -> list[Path]:
    paths = [Path("performance.yaml")]
    home = Path(os.path.expanduser("~"))
    paths.append(home / ".portfolio_returns" / "performance.yaml")
    return paths


def load_performance_config() -> tuple[PerformanceConfig, Optional[str]]:
    source: Optional[str] = None
    data: dict = {}
    for p in _candidate_paths():
        if p.exists():
            raw = yaml.safe_load(p.read_text()) or {}
            data = dict(raw.get("performance") or raw)
            source = str(p)
            break
    tz = os.environ.get("PERFORMANCE_TIMEZONE")
    if tz:
        data["timezone"] = tz
    return PerformanceConfig.model_validate(data), source
