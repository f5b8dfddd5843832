from __future__ import annotations

import datetime as dt
from typing import Any

try:
    from sqlalchemy import JSON, Date, Index, Integer, String, UniqueConstraint
    from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
except Exception as e:  # pragma: no cover
    raise RuntimeError(
        "Failed to import SQLAlchemy.\n\n"
        "Common cause on macOS: running with system Python 3.13 + an older/incompatible SQLAlchemy, "
        "which can raise errors mentioning 'TypingOnly'.\n\n"
        "Fix:\n"
        "  1) Use Python 3.11/3.12 (recommended), or ensure SQLAlchemy is upgraded for Python 3.13.\n"
        "  2) Create a virtualenv and install the project:\n"
        "     python -m venv .venv\n"
        "     source .venv/bin/activate\n"
        "     pip install -e .\n\n"
        f"Original error: {type(e).__name__}: {e}"
    ) from e

from src.utils.time import utcnow
from src.db.types import UTCDateTime


class Base(DeclarativeBase):
    pass


PeriodType = String(8)  # "month" | "year"


class DailyPerformanceRecord(Base):
    """One day of precomputed performance for a user's scope (an account id or "overall")."""

    __tablename__ = "daily_performance"
    __table_args__ = (
        UniqueConstraint("user_id", "scope", "date"),
        Index("ix_daily_performance_scope_date", "user_id", "scope", "date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    scope: Mapped[str] = mapped_column(String(128), nullable=False)
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class ConsolidatedPeriod(Base):
    __tablename__ = "consolidated_periods"
    __table_args__ = (
        UniqueConstraint("user_id", "scope", "period_type", "period_key"),
        Index("ix_consolidated_periods_lookup", "user_id", "scope", "period_type", "period_key"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    scope: Mapped[str] = mapped_column(String(128), nullable=False)
    period_type: Mapped[str] = mapped_column(PeriodType, nullable=False)
    period_key: Mapped[str] = mapped_column(String(7), nullable=False)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    docs_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    schema_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)


class ReturnsCacheEntry(Base):
    __tablename__ = "returns_cache"
    __table_args__ = (UniqueConstraint("user_id", "cache_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)
    cache_key: Mapped[str] = mapped_column(String(256), nullable=False)
    payload_json: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    last_calculated: Mapped[dt.datetime] = mapped_column(UTCDateTime(), default=utcnow, nullable=False)
    valid_until: Mapped[dt.datetime] = mapped_column(UTCDateTime(), nullable=False)
