from __future__ import annotations

import datetime as dt
import logging
from typing import Callable, Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker

from src.app.db import db_session_factory
from src.core.consolidation_job import backfill_scope, run_monthly_consolidation, run_yearly_consolidation
from src.core.exceptions import InsufficientDataError, InvalidPeriodKeyError, PerformanceStoreError
from src.core.historical_returns import HistoricalReturnsService, ReturnsQuery
from src.core.performance_config import PerformanceConfig, load_performance_config
from src.core.performance_store import SqlPerformanceStore
from src.core.returns_cache import ReturnsCache
from src.utils.time import local_today, utcnow

log = logging.getLogger(__name__)

router = APIRouter(prefix="/api/performance", tags=["performance"])


def performance_config() -> PerformanceConfig:
    cfg, _src = load_performance_config()
    return cfg


def performance_clock() -> Callable[[], dt.datetime]:
    return utcnow


def _service(
    factory: sessionmaker[Session], cfg: PerformanceConfig, clock: Callable[[], dt.datetime]
) -> HistoricalReturnsService:
    return HistoricalReturnsService(SqlPerformanceStore(factory), cfg, clock, cache=ReturnsCache(factory))


def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "error": message})


@router.get("/returns")
def get_returns(
    user_id: str,
    currency: str = "USD",
    account_id: list[str] = Query(default=[]),
    ticker: Optional[str] = None,
    asset_type: Optional[str] = None,
    force_refresh: bool = False,
    factory: sessionmaker[Session] = Depends(db_session_factory),
    cfg: PerformanceConfig = Depends(performance_config),
    clock: Callable[[], dt.datetime] = Depends(performance_clock),
):
    try:
        query = ReturnsQuery(
            user_id=user_id,
            currency=currency.strip().upper(),
            account_ids=tuple(a for a in account_id if a),
            ticker=ticker or None,
            asset_type=asset_type or None,
        )
    except ValueError as e:
        return _error(400, str(e))
    try:
        result = _service(factory, cfg, clock).get_cached_historical_returns(query, force_refresh=force_refresh)
    except InsufficientDataError as e:
        return _error(404, str(e))
    except PerformanceStoreError as e:
        return _error(503, str(e))
    return JSONResponse({"ok": True, **result})


@router.get("/consolidation-status")
def get_consolidation_status(
    user_id: str,
    scope: str = "overall",
    factory: sessionmaker[Session] = Depends(db_session_factory),
    cfg: PerformanceConfig = Depends(performance_config),
    clock: Callable[[], dt.datetime] = Depends(performance_clock),
):
    try:
        status = _service(factory, cfg, clock).consolidation_status(user_id, scope)
    except PerformanceStoreError as e:
        return _error(503, str(e))
    return JSONResponse({"ok": True, "status": status})


class InvalidateRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list)


@router.post("/cache/invalidate")
def invalidate_cache(
    body: InvalidateRequest,
    factory: sessionmaker[Session] = Depends(db_session_factory),
):
    if not body.user_ids:
        return _error(400, "user_ids must not be empty")
    try:
        removed = ReturnsCache(factory).invalidate_many(body.user_ids)
    except PerformanceStoreError as e:
        return _error(503, str(e))
    return JSONResponse({"ok": True, "removed": removed})


class ConsolidateRequest(BaseModel):
    mode: str = "monthly"  # monthly | yearly | backfill
    user_id: Optional[str] = None
    scope: str = "overall"
    as_of: Optional[dt.date] = None


@router.post("/consolidate")
def consolidate(
    body: ConsolidateRequest,
    factory: sessionmaker[Session] = Depends(db_session_factory),
    cfg: PerformanceConfig = Depends(performance_config),
    clock: Callable[[], dt.datetime] = Depends(performance_clock),
):
    mode = body.mode.strip().lower()
    if mode not in {"monthly", "yearly", "backfill"}:
        return _error(400, "mode must be monthly, yearly or backfill")
    if mode == "backfill" and not body.user_id:
        return _error(400, "backfill requires user_id")

    store = SqlPerformanceStore(factory)
    cache = ReturnsCache(factory)
    today = body.as_of or local_today(cfg.timezone, clock())
    try:
        if mode == "backfill":
            result = backfill_scope(store, body.user_id, body.scope, today)
            touched = [body.user_id]
        else:
            run = run_monthly_consolidation if mode == "monthly" else run_yearly_consolidation
            result = run(store, today)
            touched = store.list_users()
        # New checkpoints change what the consolidated path reads.
        cache.invalidate_many(touched)
    except InvalidPeriodKeyError as e:
        return _error(400, str(e))
    except PerformanceStoreError as e:
        return _error(503, str(e))
    log.info("[performance] consolidate mode=%s as_of=%s", mode, today.isoformat())
    return JSONResponse({"ok": True, "result": result})
