from __future__ import annotations

import datetime as dt
import logging
from contextlib import contextmanager
from typing import Iterable, Iterator, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.core.consolidation import CONSOLIDATED_SCHEMA_VERSION, checkpoint_from_dict, checkpoint_to_dict
from src.core.exceptions import PerformanceStoreError
from src.core.records import DailyRecord, PeriodCheckpoint, sort_records
from src.db.models import ConsolidatedPeriod, DailyPerformanceRecord
from src.utils.time import utcnow

log = logging.getLogger(__name__)


class PerformanceStore(Protocol):
    def list_daily_records(
        self, user_id: str, scope: str, start: dt.date | None = None, end: dt.date | None = None
    ) -> list[DailyRecord]: ...

    def list_checkpoints(
        self,
        user_id: str,
        scope: str,
        period_type: str,
        start_key: str,
        end_key: str,
        end_inclusive: bool = True,
    ) -> list[PeriodCheckpoint]: ...

    def save_checkpoint(self, user_id: str, scope: str, checkpoint: PeriodCheckpoint) -> None: ...

    def list_users(self) -> list[str]: ...

    def list_scopes(self, user_id: str) -> list[str]: ...


class SqlPerformanceStore:
    """
    SQLAlchemy-backed store. Every call opens its own session, so one instance can be shared by
    the fetch threads of a query.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._factory = session_factory

    @contextmanager
    def _session(self, op: str) -> Iterator[Session]:
        try:
            with self._factory() as session:
                yield session
        except SQLAlchemyError as e:
            log.error("[performance_store] %s failed: %s", op, e)
            raise PerformanceStoreError(f"{op} failed: {type(e).__name__}: {e}") from e

    def list_daily_records(
        self, user_id: str, scope: str, start: dt.date | None = None, end: dt.date | None = None
    ) -> list[DailyRecord]:
        stmt = select(DailyPerformanceRecord).where(
            DailyPerformanceRecord.user_id == user_id,
            DailyPerformanceRecord.scope == scope,
        )
        if start is not None:
            stmt = stmt.where(DailyPerformanceRecord.date >= start)
        if end is not None:
            stmt = stmt.where(DailyPerformanceRecord.date <= end)
        stmt = stmt.order_by(DailyPerformanceRecord.date)
        with self._session("list_daily_records") as session:
            rows = session.execute(stmt).scalars().all()
            return [DailyRecord.from_dict({**(r.payload_json or {}), "date": r.date}) for r in rows]

    def list_checkpoints(
        self,
        user_id: str,
        scope: str,
        period_type: str,
        start_key: str,
        end_key: str,
        end_inclusive: bool = True,
    ) -> list[PeriodCheckpoint]:
        if start_key > end_key or (start_key == end_key and not end_inclusive):
            return []
        upper = ConsolidatedPeriod.period_key <= end_key if end_inclusive else ConsolidatedPeriod.period_key < end_key
        stmt = (
            select(ConsolidatedPeriod)
            .where(
                ConsolidatedPeriod.user_id == user_id,
                ConsolidatedPeriod.scope == scope,
                ConsolidatedPeriod.period_type == period_type,
                ConsolidatedPeriod.period_key >= start_key,
                upper,
            )
            .order_by(ConsolidatedPeriod.period_key)
        )
        with self._session("list_checkpoints") as session:
            rows = session.execute(stmt).scalars().all()
            out: list[PeriodCheckpoint] = []
            for r in rows:
                if int(r.schema_version or 0) > CONSOLIDATED_SCHEMA_VERSION:
                    log.warning(
                        "[performance_store] skipping %s %s: schema v%s is newer than v%s",
                        r.period_type,
                        r.period_key,
                        r.schema_version,
                        CONSOLIDATED_SCHEMA_VERSION,
                    )
                    continue
                out.append(checkpoint_from_dict(r.payload_json or {}))
            return out

    def save_checkpoint(self, user_id: str, scope: str, checkpoint: PeriodCheckpoint) -> None:
        payload = checkpoint_to_dict(checkpoint)
        with self._session("save_checkpoint") as session:
            row = session.execute(
                select(ConsolidatedPeriod).where(
                    ConsolidatedPeriod.user_id == user_id,
                    ConsolidatedPeriod.scope == scope,
                    ConsolidatedPeriod.period_type == checkpoint.period_type,
                    ConsolidatedPeriod.period_key == checkpoint.period_key,
                )
            ).scalar_one_or_none()
            if row is None:
                row = ConsolidatedPeriod(
                    user_id=user_id,
                    scope=scope,
                    period_type=checkpoint.period_type,
                    period_key=checkpoint.period_key,
                )
                session.add(row)
            row.start_date = checkpoint.start_date
            row.end_date = checkpoint.end_date
            row.docs_count = checkpoint.docs_count
            row.schema_version = CONSOLIDATED_SCHEMA_VERSION
            row.payload_json = payload
            row.updated_at = utcnow()
            session.commit()

    def save_daily_records(self, user_id: str, scope: str, records: Iterable[DailyRecord]) -> int:
        """Upsert daily records by date; returns how many were written."""
        ordered = sort_records(records)
        if not ordered:
            return 0
        with self._session("save_daily_records") as session:
            existing = {
                r.date: r
                for r in session.execute(
                    select(DailyPerformanceRecord).where(
                        DailyPerformanceRecord.user_id == user_id,
                        DailyPerformanceRecord.scope == scope,
                        DailyPerformanceRecord.date >= ordered[0].date,
                        DailyPerformanceRecord.date <= ordered[-1].date,
                    )
                ).scalars()
            }
            for rec in ordered:
                payload = rec.to_dict()
                payload.pop("date", None)
                row = existing.get(rec.date)
                if row is None:
                    session.add(DailyPerformanceRecord(user_id=user_id, scope=scope, date=rec.date, payload_json=payload))
                else:
                    row.payload_json = payload
            session.commit()
        return len(ordered)

    def list_users(self) -> list[str]:
        with self._session("list_users") as session:
            rows = session.execute(select(DailyPerformanceRecord.user_id).distinct()).scalars().all()
            return sorted(str(u) for u in rows)

    def list_scopes(self, user_id: str) -> list[str]:
        with self._session("list_scopes") as session:
            rows = (
                session.execute(
                    select(DailyPerformanceRecord.scope).where(DailyPerformanceRecord.user_id == user_id).distinct()
                )
                .scalars()
                .all()
            )
            return sorted(str(s) for s in rows)
